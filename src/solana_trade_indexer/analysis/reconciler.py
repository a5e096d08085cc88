"""Merge pool and curve oracle outputs into one authoritative token snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from ..datalake.schemas import OracleResult, PoolKind, TokenMetrics, VolumeStats
from ..monitoring.metrics import METRICS
from ..utils.outcome import positive_price, safe_ratio
from .tiers import Tier, resolve_first

PriceAndLiquidity = Tuple[Optional[float], Optional[float]]


@dataclass(frozen=True, slots=True)
class OracleInputs:
    pool: OracleResult
    curve: OracleResult
    migrated: bool

    @property
    def pool_has_price(self) -> bool:
        return self.pool.has_price

    @property
    def curve_has_price(self) -> bool:
        return self.curve.has_price


def is_migrated(curve: OracleResult) -> bool:
    """A curve that reports progress of at least 1 has moved its liquidity to a pool."""

    return any(
        pool.kind == PoolKind.CURVE and (pool.curve_progress or 0.0) >= 1.0
        for pool in curve.pools
    )


def _from_pool(inputs: OracleInputs) -> PriceAndLiquidity:
    return inputs.pool.price, inputs.pool.liquidity


def _from_curve(inputs: OracleInputs) -> PriceAndLiquidity:
    return inputs.curve.price, inputs.curve.liquidity


def _pool_then_curve(inputs: OracleInputs) -> PriceAndLiquidity:
    price = inputs.pool.price if inputs.pool.price is not None else inputs.curve.price
    liquidity = inputs.pool.liquidity if inputs.pool.liquidity is not None else inputs.curve.liquidity
    return price, liquidity


SOURCE_TIERS: List[Tier[OracleInputs, PriceAndLiquidity]] = [
    Tier("migrated_pool", lambda i: i.migrated and i.pool_has_price, _from_pool),
    Tier("active_curve", lambda i: not i.migrated and i.curve_has_price, _from_curve),
    Tier("curve_only", lambda i: i.curve_has_price and not i.pool_has_price, _from_curve),
    Tier("pool_only", lambda i: i.pool_has_price and not i.curve_has_price, _from_pool),
    Tier("pool_then_curve", lambda i: True, _pool_then_curve),
]


def market_cap(supply: Optional[float], price: Optional[float]) -> Optional[float]:
    if supply is None or price is None:
        return None
    return supply * price


def price_from_trade_deltas(
    mint_deltas: Optional[Mapping[str, float]], mint: str, reference_mint: str
) -> Optional[float]:
    """Spot price implied by a trade's own reference-asset and token movements."""

    if not mint_deltas:
        return None
    reference_delta = abs(float(mint_deltas.get(reference_mint, 0.0) or 0.0))
    token_delta = abs(float(mint_deltas.get(mint, 0.0) or 0.0))
    if reference_delta <= 0 or token_delta <= 0:
        return None
    return safe_ratio(reference_delta, token_delta).value_or(None)


class MetricsReconciler:
    """Stateless merge of oracle results; identical inputs give identical output."""

    def __init__(self, reference_mint: str) -> None:
        self._reference_mint = reference_mint

    def select_source(self, pool: OracleResult, curve: OracleResult) -> Tuple[str, PriceAndLiquidity]:
        inputs = OracleInputs(pool=pool, curve=curve, migrated=is_migrated(curve))
        name, value = resolve_first(SOURCE_TIERS, inputs)
        return name or "pool_then_curve", value or (None, None)

    def reconcile(
        self,
        mint: str,
        pool: OracleResult,
        curve: OracleResult,
        *,
        supply: Optional[float] = None,
        decimals: Optional[int] = None,
        volume: Optional[VolumeStats] = None,
        mint_deltas: Optional[Mapping[str, float]] = None,
    ) -> TokenMetrics:
        source, (price, liquidity) = self.select_source(pool, curve)
        price = positive_price(price).value_or(None)

        if price is None:
            derived = price_from_trade_deltas(mint_deltas, mint, self._reference_mint)
            if derived is not None:
                price = derived
                source = "trade_deltas"

        METRICS.increment(f"reconciler.tier.{source}")
        return TokenMetrics(
            mint=mint,
            price=price,
            liquidity=liquidity,
            supply=supply,
            decimals=decimals,
            market_cap=market_cap(supply, price),
            pools=[*pool.pools, *curve.pools],
            volume=volume or VolumeStats(),
            price_source=source if price is not None else None,
        )


__all__ = [
    "MetricsReconciler",
    "OracleInputs",
    "SOURCE_TIERS",
    "is_migrated",
    "market_cap",
    "price_from_trade_deltas",
]
