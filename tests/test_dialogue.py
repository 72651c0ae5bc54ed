from unittest.mock import AsyncMock, Mock

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from skybook.llm.dialogue import OpenAIDialogue, normalize_search_arguments


def tool_call(name, args):
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": "call_1"}])


def test_plain_text_reply_has_no_intent():
    reply = OpenAIDialogue.parse_response(AIMessage(content="Where would you like to fly?"))
    assert reply.intent is None
    assert reply.message == "Where would you like to fly?"


def test_search_tool_call_becomes_intent_with_normalized_dates():
    reply = OpenAIDialogue.parse_response(
        tool_call("ExtractFlightSearchParams", {
            "trip_type": "one_way", "origin": "LHR", "destination": "AMS", "departure_date": "2030-05-01",
        }),
        user_text="yes, a morning flight please",
    )
    assert reply.intent.name == "search_flights"
    assert reply.intent.arguments["departure_date"] == "2030-05-01"
    assert reply.intent.arguments["departure_time"] == {"from": "06:00", "to": "12:00"}


def test_other_tools_map_to_intents():
    assert OpenAIDialogue.parse_response(
        tool_call("FilterFlightOptions", {"price_sort": "lowest"})).intent.name == "filter_flights"
    assert OpenAIDialogue.parse_response(
        tool_call("SearchMoreFlights", {"focus_on": "cheaper"})).intent.name == "search_more_flights"
    select = OpenAIDialogue.parse_response(tool_call("SelectFlightOffer", {"option_number": 2}))
    assert select.intent.name == "select_offer"
    assert select.intent.arguments == {"option_number": 2}


def test_unknown_tool_is_ignored():
    reply = OpenAIDialogue.parse_response(tool_call("BookHotel", {}))
    assert reply.intent is None
    assert reply.message


def test_explicit_time_window_is_kept():
    args = normalize_search_arguments(
        {"departure_date": "2030-05-01", "departure_time": {"from": "14:00", "to": "16:00"}},
        user_text="in the morning",
    )
    assert args["departure_time"] == {"from": "14:00", "to": "16:00"}


async def test_respond_sends_stage_prompt_context_and_history():
    bound = Mock()
    bound.ainvoke = AsyncMock(return_value=AIMessage(content="Which dates?"))
    llm = Mock()
    llm.bind_tools.return_value = bound

    dialogue = OpenAIDialogue(llm=llm)
    reply = await dialogue.respond(
        [{"role": "user", "content": "I want to fly to Amsterdam"},
         {"role": "assistant", "content": "From where?"},
         {"role": "user", "content": "London"}],
        {"stage": "initial", "results_shown": 0},
    )

    assert reply.message == "Which dates?"
    sent = bound.ainvoke.call_args.args[0]
    assert isinstance(sent[0], SystemMessage)
    assert "Never ask for names" in sent[0].content
    assert '"results_shown": 0' in sent[0].content
    assert [type(m) for m in sent[1:]] == [HumanMessage, AIMessage, HumanMessage]
    tools = llm.bind_tools.call_args.args[0]
    assert len(tools) == 4
