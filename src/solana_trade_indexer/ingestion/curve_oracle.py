"""Price and liquidity from bonding curve reserves."""

from __future__ import annotations

import time
from typing import Optional

from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import CurveState, OracleResult, PoolKind, PoolQuote
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import ACTIVATION_TYPE_TIMESTAMP
from ..utils.outcome import ABSENT, Outcome, positive_price, safe_ratio
from .chain import ChainDataSource


class BondingCurveOracle:
    """Prices a mint from its bonding curve, if it still has one."""

    def __init__(self, source: ChainDataSource, config: Optional[AppConfig] = None) -> None:
        self._source = source
        self._config = config or get_app_config()
        self._pricing = self._config.pricing
        self._logger = get_logger(__name__)

    def quote(self, mint: str) -> OracleResult:
        """Never raises; a missing curve or any failure yields an empty result."""

        try:
            return self._quote(mint)
        except Exception as exc:  # noqa: BLE001
            METRICS.increment("oracle.curve.failures")
            self._logger.warning("Bonding curve oracle failed for %s: %s", mint, exc)
            return OracleResult.empty()

    def _quote(self, mint: str) -> OracleResult:
        curve = self._source.get_curve(mint)
        if curve is None:
            return OracleResult.empty()

        base_decimals = self._base_decimals(curve, mint)
        quote_decimals = self._quote_decimals(curve)
        base = curve.base_reserve / (10 ** base_decimals)
        quote = curve.quote_reserve / (10 ** quote_decimals)
        if not base > 0:
            return OracleResult.empty()

        reserve_ratio = safe_ratio(quote, base)
        price_outcome = self._swap_quote_price(curve, base_decimals, quote_decimals).or_else(reserve_ratio)
        price = price_outcome.value_or(None)
        if price is None:
            return OracleResult.empty()
        liquidity = quote + base * price

        pool = PoolQuote(
            pool_address=curve.address,
            token_a=curve.base_mint or mint,
            token_b=curve.quote_mint,
            price=price,
            liquidity=liquidity,
            kind=PoolKind.CURVE,
            curve_progress=self._progress(curve),
        )
        return OracleResult(price=price, liquidity=liquidity, pools=[pool])

    def _base_decimals(self, curve: CurveState, mint: str) -> int:
        if curve.base_decimals is not None:
            return curve.base_decimals
        decimals = self._source.get_mint_decimals(mint)
        return decimals if decimals is not None else self._pricing.default_token_decimals

    def _quote_decimals(self, curve: CurveState) -> int:
        if curve.quote_decimals is not None:
            return curve.quote_decimals
        if curve.quote_mint == self._pricing.reference_mint:
            return self._pricing.reference_decimals
        decimals = self._source.get_mint_decimals(curve.quote_mint)
        return decimals if decimals is not None else self._pricing.default_token_decimals

    def _current_point(self, curve: CurveState) -> int:
        if curve.activation_type == ACTIVATION_TYPE_TIMESTAMP:
            return int(time.time())
        return self._source.get_slot()

    def _swap_quote_price(
        self, curve: CurveState, base_decimals: int, quote_decimals: int
    ) -> Outcome[float]:
        """Quoted proceeds of selling one whole base token, in reference units."""

        try:
            out_amount = self._source.curve_swap_quote(
                curve,
                amount_in=10 ** base_decimals,
                current_point=self._current_point(curve),
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Swap quote failed for curve %s: %s", curve.address, exc)
            return ABSENT
        if out_amount is None:
            return ABSENT
        return positive_price(out_amount).map(lambda raw: raw / (10 ** quote_decimals))

    def _progress(self, curve: CurveState) -> Optional[float]:
        try:
            progress = self._source.get_curve_progress(curve)
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Curve progress unavailable for %s: %s", curve.address, exc)
            return None
        return float(progress) if progress is not None else None


__all__ = ["BondingCurveOracle"]
