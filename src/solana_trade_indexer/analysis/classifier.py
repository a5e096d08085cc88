"""Infer trade direction, size and price from balance deltas."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from ..config.settings import PricingConfig
from ..datalake.schemas import (
    BalanceJoin,
    ClassifiedTrade,
    EventType,
    PrimarySelection,
    TradeSide,
)
from ..monitoring.metrics import METRICS
from ..utils.outcome import is_usable_number, positive_price, safe_ratio
from .tiers import Tier, resolve_first


@dataclass(frozen=True, slots=True)
class TradeDeltas:
    """Payer-scoped and aggregate deltas of the primary mint and the reference asset."""

    from_venue: bool
    payer_primary: float
    payer_reference: float
    aggregate_primary: float
    aggregate_reference: float

    @classmethod
    def from_join(
        cls,
        join: BalanceJoin,
        primary_mint: str,
        reference_mint: str,
        payer: Optional[str],
        from_venue: bool,
    ) -> "TradeDeltas":
        return cls(
            from_venue=from_venue,
            payer_primary=join.owner_delta(payer, primary_mint),
            payer_reference=join.owner_delta(payer, reference_mint),
            aggregate_primary=join.mint_delta.get(primary_mint, 0.0),
            aggregate_reference=join.mint_delta.get(reference_mint, 0.0),
        )


def _side_of_token_delta(delta: float) -> TradeSide:
    return TradeSide.BUY if delta > 0 else TradeSide.SELL


def _side_of_reference_delta(delta: float) -> TradeSide:
    # Spending the reference asset means the payer bought the token.
    return TradeSide.BUY if delta < 0 else TradeSide.SELL


SIDE_TIERS: List[Tier[TradeDeltas, TradeSide]] = [
    Tier(
        "payer_primary",
        lambda d: d.payer_primary != 0,
        lambda d: _side_of_token_delta(d.payer_primary),
    ),
    Tier(
        "payer_reference",
        lambda d: d.from_venue and d.payer_reference != 0,
        lambda d: _side_of_reference_delta(d.payer_reference),
    ),
    Tier(
        "aggregate_reference",
        lambda d: d.from_venue and d.aggregate_reference != 0,
        lambda d: _side_of_reference_delta(d.aggregate_reference),
    ),
    Tier(
        "aggregate_primary",
        lambda d: d.aggregate_primary != 0,
        lambda d: _side_of_token_delta(d.aggregate_primary),
    ),
    # Outside venue programs the reference deltas are only consulted last.
    Tier(
        "payer_reference",
        lambda d: not d.from_venue and d.payer_reference != 0,
        lambda d: _side_of_reference_delta(d.payer_reference),
    ),
    Tier(
        "aggregate_reference",
        lambda d: not d.from_venue and d.aggregate_reference != 0,
        lambda d: _side_of_reference_delta(d.aggregate_reference),
    ),
]


def determine_side(deltas: TradeDeltas) -> Tuple[TradeSide, Optional[str]]:
    name, side = resolve_first(SIDE_TIERS, deltas)
    if side is None:
        return TradeSide.UNKNOWN, None
    return side, name


def _prefer_payer(payer_value: float, aggregate_value: float) -> float:
    payer_abs = abs(payer_value)
    return payer_abs if payer_abs > 0 else abs(aggregate_value)


def derive_trade_price(deltas: TradeDeltas, ceiling: float) -> Optional[float]:
    """``|reference delta| / |token delta|``, accepted only inside ``(0, ceiling)``."""

    token_amount = _prefer_payer(deltas.payer_primary, deltas.aggregate_primary)
    reference_amount = _prefer_payer(deltas.payer_reference, deltas.aggregate_reference)
    if token_amount <= 0 or reference_amount <= 0:
        return None
    price = safe_ratio(reference_amount, token_amount).value_or(None)
    if price is None or price >= ceiling:
        return None
    return price


class TradeClassifier:
    """Turns the deltas of one transaction into a :class:`ClassifiedTrade`.

    Transactions from programs outside ``venue_program_ids`` consult the
    reference-asset deltas only after the primary-mint deltas. An empty
    ``venue_program_ids`` treats every program as a venue.
    """

    def __init__(
        self,
        pricing: PricingConfig,
        venue_program_ids: Iterable[str] = (),
    ) -> None:
        self._reference_mint = pricing.reference_mint
        self._price_ceiling = pricing.derived_price_ceiling
        self._venue_program_ids = frozenset(venue_program_ids)

    def is_venue_program(self, program_id: str) -> bool:
        return not self._venue_program_ids or program_id in self._venue_program_ids

    def classify(
        self,
        *,
        signature: str,
        program_id: str,
        join: BalanceJoin,
        selection: PrimarySelection,
        payer: Optional[str],
        block_time: Optional[datetime] = None,
        oracle_price: Optional[float] = None,
    ) -> Optional[ClassifiedTrade]:
        """Classify a transaction; ``None`` when no primary mint was resolved."""

        if selection.mint is None:
            return None
        deltas = TradeDeltas.from_join(
            join,
            selection.mint,
            self._reference_mint,
            payer,
            from_venue=self.is_venue_program(program_id),
        )
        side, side_source = determine_side(deltas)

        price = positive_price(oracle_price).value_or(None)
        price_source: Optional[str] = "oracle" if price is not None else None
        if price is None:
            price = derive_trade_price(deltas, self._price_ceiling)
            price_source = "trade_deltas" if price is not None else None

        base_amount: Optional[float] = _prefer_payer(deltas.payer_primary, deltas.aggregate_primary)
        if not is_usable_number(base_amount):
            base_amount = None
        reference_abs = abs(deltas.aggregate_reference)
        if base_amount and price is not None:
            quote_value: Optional[float] = base_amount * price
        elif reference_abs > 0 and is_usable_number(reference_abs):
            quote_value = reference_abs
        else:
            quote_value = None

        if side is TradeSide.UNKNOWN:
            event_type = EventType.UPDATE
        else:
            event_type = EventType(side.value)

        METRICS.increment(f"trades.{side.value}")
        return ClassifiedTrade(
            signature=signature,
            primary_mint=selection.mint,
            side=side,
            base_amount=base_amount,
            price=price,
            quote_value=quote_value,
            trader=payer,
            block_time=block_time,
            event_type=event_type,
            reference_delta=deltas.aggregate_reference,
            side_source=side_source,
            price_source=price_source,
        )


__all__ = [
    "SIDE_TIERS",
    "TradeClassifier",
    "TradeDeltas",
    "derive_trade_price",
    "determine_side",
]
