"""
Dialogue collaborator

Wraps an OpenAI chat model with tool calling. The model either answers in
plain text or calls one of four tools; a tool call becomes an ``Intent`` the
conversation service dispatches. The model only ever sees the sanitized
context, never passenger or payment data.
"""

from typing import Any, Dict, List, Literal, Optional, Protocol
import json

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from skybook.config import settings
from skybook.obs.logger import log_event
from skybook.utils.dates import to_iso_date, today
from skybook.validation.validator import parse_time_preference

IntentName = Literal["search_flights", "filter_flights", "search_more_flights", "select_offer"]


class Intent(BaseModel):
    name: IntentName
    arguments: Dict[str, Any] = Field(default_factory=dict)


class DialogueReply(BaseModel):
    message: Optional[str] = None
    intent: Optional[Intent] = None


class DialogueAgent(Protocol):
    async def respond(self, messages: List[Dict[str, str]], context: Dict[str, Any]) -> DialogueReply: ...


# Tool schemas exposed to the model

class TimeRange(BaseModel):
    from_: str = Field(alias="from", description="HH:MM")
    to: str = Field(description="HH:MM")


class Stop(BaseModel):
    origin: str = Field(description="IATA airport code")
    destination: str = Field(description="IATA airport code")
    departure_date: str = Field(description="YYYY-MM-DD")
    departure_time: Optional[TimeRange] = None


class Travellers(BaseModel):
    adults: int = 1
    children: int = 0
    infants: int = 0


class ExtractFlightSearchParams(BaseModel):
    """Search flights. Call only after the user has confirmed every detail."""
    trip_type: Literal["one_way", "round_trip", "multi_city"]
    origin: str = Field(description="Origin IATA airport code, e.g. LHR")
    destination: str = Field(description="Destination IATA airport code")
    departure_date: str = Field(description="YYYY-MM-DD")
    return_date: Optional[str] = Field(None, description="YYYY-MM-DD, round trips only")
    departure_time: Optional[TimeRange] = None
    arrival_time: Optional[TimeRange] = None
    passengers: Optional[Travellers] = None
    cabin_class: Optional[Literal["economy", "premium_economy", "business", "first"]] = None
    max_connections: Optional[int] = Field(None, description="0 for direct flights only, at most 3")
    additional_stops: Optional[List[Stop]] = Field(None, description="Further legs of a multi-city trip, in order")


class FilterFlightOptions(BaseModel):
    """Narrow or reorder the flights currently shown."""
    time_of_day: Optional[Literal["morning", "afternoon", "evening", "night", "red_eye"]] = None
    max_connections: Optional[int] = None
    airlines: Optional[List[str]] = Field(None, description="IATA airline codes")
    price_sort: Optional[Literal["lowest", "highest"]] = None
    duration_sort: Optional[Literal["shortest", "longest"]] = None


class SearchMoreFlights(BaseModel):
    """Find further options beyond the ones shown."""
    focus_on: Optional[Literal["cheaper", "faster", "premium", "different_times"]] = None


class SelectFlightOffer(BaseModel):
    """The user picked one of the shown options."""
    option_number: int = Field(ge=1, description="1-based position in the shown list")


_TOOL_INTENTS = {
    "ExtractFlightSearchParams": "search_flights",
    "FilterFlightOptions": "filter_flights",
    "SearchMoreFlights": "search_more_flights",
    "SelectFlightOffer": "select_offer",
}

_PRIVACY = """Never ask for names, birth dates, passport, contact or payment details in chat.
Those are collected through secure forms."""

STAGE_PROMPTS = {
    "initial": """You help travellers find and book flights.
Collect one or two details at a time: trip type, airports, dates, travellers, cabin and time preferences.
Summarise everything and ask for confirmation before calling ExtractFlightSearchParams.
Use IATA airport codes and YYYY-MM-DD dates. Today is {today}.""",
    "search": """A flight search is in progress. Today is {today}.
If the user changes their trip, confirm the new details and call ExtractFlightSearchParams again.""",
    "selection": """The user is looking at flight options shown on screen; do not describe them.
Call FilterFlightOptions to narrow them, SearchMoreFlights for alternatives,
or SelectFlightOffer when the user picks an option.""",
    "authentication": """The user picked a flight and must sign in to continue. Keep it short.""",
    "passenger_details": """Passenger details are entered in a form. Explain what is needed, e.g. passports for international trips.""",
    "additional_services": """The user may add seats, bags or other extras, or skip them. Explain prices when asked.""",
    "payment": """Payment happens in a secure form. Explain the total and the booking steps.""",
    "confirmation": """The booking is complete. Refer to it only by booking reference and help with next steps.""",
}

SYSTEM = """{stage_prompt}

{privacy}

Conversation context (JSON): {context}"""


def _to_messages(history: List[Dict[str, str]]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for m in history:
        if m.get("role") == "assistant":
            out.append(AIMessage(content=m.get("content", "")))
        elif m.get("role") == "user":
            out.append(HumanMessage(content=m.get("content", "")))
    return out


def _last_user_text(history: List[Dict[str, str]]) -> str:
    for m in reversed(history):
        if m.get("role") == "user":
            return m.get("content", "")
    return ""


def normalize_search_arguments(args: Dict[str, Any], user_text: str = "") -> Dict[str, Any]:
    """Coerce loose dates to ISO and fill a departure window from phrases like "morning flight"."""
    args = dict(args)
    for key in ("departure_date", "return_date"):
        if args.get(key):
            args[key] = to_iso_date(args[key])
    stops = []
    for stop in args.get("additional_stops") or []:
        stop = dict(stop)
        if stop.get("departure_date"):
            stop["departure_date"] = to_iso_date(stop["departure_date"])
        stops.append(stop)
    if stops:
        args["additional_stops"] = stops
    if not args.get("departure_time") and user_text:
        window = parse_time_preference(user_text)
        if window:
            args["departure_time"] = window.model_dump(by_alias=True)
    return args


class OpenAIDialogue:
    def __init__(self, llm: Optional[ChatOpenAI] = None):
        self.llm = llm or ChatOpenAI(
            model=settings.OPENAI_MODEL,
            temperature=settings.OPENAI_TEMPERATURE,
            api_key=settings.OPENAI_API_KEY,
        )
        self.llm_with_tools = self.llm.bind_tools(
            [ExtractFlightSearchParams, FilterFlightOptions, SearchMoreFlights, SelectFlightOffer]
        )
        self.prompt = ChatPromptTemplate.from_messages(
            [("system", SYSTEM), MessagesPlaceholder("history")]
        )

    async def respond(self, messages: List[Dict[str, str]], context: Dict[str, Any]) -> DialogueReply:
        stage = context.get("stage", "initial")
        stage_prompt = STAGE_PROMPTS.get(stage, STAGE_PROMPTS["initial"]).format(today=today().isoformat())
        prompt_messages = self.prompt.format_messages(
            stage_prompt=stage_prompt,
            privacy=_PRIVACY,
            context=json.dumps(context, default=str),
            history=_to_messages(messages),
        )
        res = await self.llm_with_tools.ainvoke(prompt_messages)
        return self.parse_response(res, _last_user_text(messages))

    @staticmethod
    def parse_response(res: AIMessage, user_text: str = "") -> DialogueReply:
        content = res.content if isinstance(res.content, str) else ""
        for call in getattr(res, "tool_calls", None) or []:
            name = _TOOL_INTENTS.get(call.get("name"))
            if name is None:
                log_event("dialogue_unknown_tool", level="WARN", tool=call.get("name"))
                continue
            args = call.get("args") or {}
            if name == "search_flights":
                args = normalize_search_arguments(args, user_text)
            log_event("dialogue_intent", intent=name)
            return DialogueReply(message=content or None, intent=Intent(name=name, arguments=args))
        return DialogueReply(message=content or "How can I help you with your travel plans today?")
