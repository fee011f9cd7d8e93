"""
Pack Optimizer - cheapest mix of add-on packs covering extra inspections.

Used by the pricing engine when a customer needs more inspections than
their tier includes.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass
class PackOption:
    """A pack that is orderable for the tier and currency in question."""
    pack_id: str
    name: str
    quantity: int
    price: int  # total pack price, minor units


@dataclass
class PackSelection:
    """A pack chosen for the quote, consolidated by pack."""
    pack_id: str
    name: str
    count: int
    quantity: int  # inspections per pack
    unit_price: int  # price per pack

    @property
    def inspections(self) -> int:
        return self.count * self.quantity

    @property
    def total_price(self) -> int:
        return self.count * self.unit_price


def recommend_pack_mix(extra_inspections: int, options: list[PackOption]) -> list[PackSelection]:
    """
    Find the cheapest combination of packs giving at least extra_inspections.

    Unbounded knapsack over inspection counts from 0 up to
    extra_inspections + largest pack. Among all reachable counts that cover
    the need, the lowest cost wins; ties go to the smaller count (less
    waste), then to fewer packs. A zero-priced pack is a real option.
    """
    if extra_inspections <= 0:
        return []

    valid = sorted(
        (o for o in options if o.quantity > 0 and o.price >= 0),
        key=lambda o: (o.quantity, o.price),
    )
    if not valid:
        return []

    limit = extra_inspections + max(o.quantity for o in valid)

    # best[i] = (cost, pack count, chosen pack ids) for exactly i inspections
    best: list[Optional[tuple[int, int, tuple[str, ...]]]] = [None] * (limit + 1)
    best[0] = (0, 0, ())
    by_id = {o.pack_id: o for o in valid}

    for i in range(1, limit + 1):
        for option in valid:
            if option.quantity > i:
                break
            prev = best[i - option.quantity]
            if prev is None:
                continue
            candidate = (prev[0] + option.price, prev[1] + 1, prev[2] + (option.pack_id,))
            if best[i] is None or candidate[:2] < best[i][:2]:
                best[i] = candidate

    winner = None
    for i in range(extra_inspections, limit + 1):
        entry = best[i]
        if entry is None:
            continue
        if winner is None or entry[0] < winner[0]:
            winner = entry

    if winner is None:
        return []

    counts: dict[str, int] = {}
    for pack_id in winner[2]:
        counts[pack_id] = counts.get(pack_id, 0) + 1

    return [
        PackSelection(
            pack_id=pack_id,
            name=by_id[pack_id].name,
            count=count,
            quantity=by_id[pack_id].quantity,
            unit_price=by_id[pack_id].price,
        )
        for pack_id, count in sorted(counts.items(), key=lambda kv: -by_id[kv[0]].quantity)
    ]
