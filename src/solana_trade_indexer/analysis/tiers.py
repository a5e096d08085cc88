"""Ordered ``(predicate, resolver)`` fallback chains."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, Tuple, TypeVar

C = TypeVar("C")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class Tier(Generic[C, R]):
    """One rung of a fallback chain: ``resolver`` runs only if ``predicate`` holds."""

    name: str
    predicate: Callable[[C], bool]
    resolver: Callable[[C], R]

    def applies(self, context: C) -> bool:
        return bool(self.predicate(context))


def resolve_first(
    tiers: Sequence[Tier[C, R]], context: C
) -> Tuple[Optional[str], Optional[R]]:
    """Return ``(tier_name, value)`` of the first tier whose predicate holds."""

    for tier in tiers:
        if tier.applies(context):
            return tier.name, tier.resolver(context)
    return None, None


__all__ = ["Tier", "resolve_first"]
