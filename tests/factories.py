"""Duffel-shaped payload builders shared by the tests."""

from datetime import datetime, timedelta

from skybook.duffel.transform import OfferNormalizer


def raw_segment(origin="LHR", destination="AMS", departing_at="2030-05-01T08:00:00",
                minutes=75, carrier="KL", flight_number="1000"):
    dep = datetime.fromisoformat(departing_at)
    arr = dep + timedelta(minutes=minutes)
    return {
        "origin": {"iata_code": origin, "name": f"{origin} Airport"},
        "destination": {"iata_code": destination, "name": f"{destination} Airport"},
        "departing_at": dep.isoformat(),
        "arriving_at": arr.isoformat(),
        "duration": f"PT{minutes // 60}H{minutes % 60}M",
        "operating_carrier": {"iata_code": carrier, "name": f"{carrier} Airlines"},
        "operating_carrier_flight_number": flight_number,
        "aircraft": {"name": "Airbus A320"},
        "passengers": [{"cabin_class": "economy"}],
    }


def raw_slice(origin="LHR", destination="AMS", departing_at="2030-05-01T08:00:00",
              minutes=75, carrier="KL", stops=0):
    segments = []
    if stops:
        via = "CDG"
        first = raw_segment(origin, via, departing_at, minutes // 2, carrier)
        second_dep = datetime.fromisoformat(departing_at) + timedelta(minutes=minutes // 2 + 60)
        second = raw_segment(via, destination, second_dep.isoformat(), minutes // 2, carrier)
        segments = [first, second]
    else:
        segments = [raw_segment(origin, destination, departing_at, minutes, carrier)]
    return {
        "origin": {"iata_code": origin, "name": f"{origin} Airport", "city_name": origin},
        "destination": {"iata_code": destination, "name": f"{destination} Airport", "city_name": destination},
        "duration": f"PT{minutes // 60}H{minutes % 60}M",
        "segments": segments,
    }


def raw_offer(offer_id="off_1", amount="100.00", departing_at="2030-05-01T08:00:00", minutes=75,
              carrier="KL", stops=0, passengers=1, expires_at="2030-04-30T12:00:00Z",
              services=None, return_at=None):
    slices = [raw_slice("LHR", "AMS", departing_at, minutes, carrier, stops)]
    if return_at:
        slices.append(raw_slice("AMS", "LHR", return_at, minutes, carrier, stops))
    offer = {
        "id": offer_id,
        "total_amount": amount,
        "total_currency": "GBP",
        "expires_at": expires_at,
        "slices": slices,
        "passengers": [
            {"id": f"pas_{offer_id}_{i}", "type": "adult",
             "baggages": [{"type": "checked", "quantity": 1}]}
            for i in range(passengers)
        ],
        "conditions": {
            "refund_before_departure": {"allowed": True, "penalty_amount": "50.00"},
            "change_before_departure": {"allowed": False},
        },
    }
    if services is not None:
        offer["available_services"] = services
    return offer


def raw_services():
    return [
        {"id": "ase_seat_12A", "type": "seat", "total_amount": "15.00", "total_currency": "GBP",
         "metadata": {"designator": "12A", "row": 12, "column": "A"}},
        {"id": "ase_bag_23", "type": "baggage", "total_amount": "30.00", "total_currency": "GBP",
         "maximum_quantity": 2, "metadata": {"type": "checked", "maximum_weight_kg": 23}},
        {"id": "ase_meal", "type": "meal", "total_amount": "8.50", "total_currency": "GBP",
         "metadata": {"name": "Hot meal"}},
    ]


def make_offer(**kwargs):
    return OfferNormalizer().normalize(raw_offer(**kwargs))


def passenger(**overrides):
    data = {
        "title": "Mr",
        "first_name": "Jan",
        "last_name": "de Vries",
        "date_of_birth": "1985-03-14",
        "gender": "m",
        "email": "jan@example.com",
        "phone_number": "612345678",
        "type": "adult",
    }
    data.update(overrides)
    return data
