"""Google Places API cost estimation."""

from typing import Mapping

# USD per request, Places API (New) list prices.
PRICING = {
    "details": 0.032,
    "search": 0.017,
    "photo": 0.007,
}

# Historical request mix of a sync run.
REQUEST_MIX = {
    "details": 0.7,
    "search": 0.2,
    "photo": 0.1,
}


def estimate_cost(requests: int) -> float:
    """Estimate the USD cost of ``requests`` calls using the historical request mix.

    Each category receives ``floor(ratio * requests)`` requests, so the estimate is
    deterministic and never decreases as ``requests`` grows.
    """
    if requests < 0:
        raise ValueError("requests must not be negative")

    total = 0.0
    for kind, ratio in REQUEST_MIX.items():
        total += int(requests * ratio) * PRICING[kind]
    return round(total, 4)


def estimate_cost_for(histogram: Mapping[str, int]) -> float:
    """Price an exact per-kind request histogram. Unknown kinds are free."""
    total = 0.0
    for kind, count in histogram.items():
        if count < 0:
            raise ValueError(f"negative request count for {kind}")
        total += count * PRICING.get(kind, 0.0)
    return round(total, 4)
