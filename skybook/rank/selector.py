from typing import List, Optional

from skybook.types import Offer


def select_diverse(offers: List[Offer], n: int = 3) -> List[Offer]:
    """Pick up to ``n`` offers that differ in what they are best at.

    Cheapest first, then the shortest total journey not already picked, then
    the earliest departure not already picked. Remaining slots are filled in
    incoming order. Ties resolve to the earlier offer.
    """
    if len(offers) <= n:
        return list(offers)

    chosen: List[Offer] = []
    chosen_ids = set()

    def take(offer: Optional[Offer]) -> None:
        if offer is not None and offer.id not in chosen_ids:
            chosen.append(offer)
            chosen_ids.add(offer.id)

    # cheapest
    take(min(offers, key=lambda o: o.total_amount))

    # fastest among the rest
    rest = [o for o in offers if o.id not in chosen_ids]
    if rest:
        take(min(rest, key=lambda o: o.total_duration_minutes))

    # earliest among the rest
    rest = [o for o in offers if o.id not in chosen_ids and o.departure_at is not None]
    if rest:
        take(min(rest, key=lambda o: o.departure_at))

    for o in offers:
        if len(chosen) >= n:
            break
        take(o)

    return chosen[:n]
