"""Price and liquidity from constant-product pool reserves."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import OracleResult, PoolKind, PoolQuote, PoolReserveState
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import SQRT_PRICE_SCALE
from ..utils.outcome import ABSENT, Outcome, positive_price, safe_ratio
from .chain import ChainDataSource

K = TypeVar("K")
V = TypeVar("V")


def fan_out(
    func: Callable[[K], V], keys: Iterable[K], max_workers: int
) -> Dict[K, V]:
    """Evaluate ``func`` for every key concurrently and join all results."""

    unique = list(dict.fromkeys(keys))
    if not unique:
        return {}
    if max_workers <= 1 or len(unique) == 1:
        return {key: func(key) for key in unique}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(unique))) as executor:
        return dict(zip(unique, executor.map(func, unique)))


def price_from_sqrt_price(sqrt_price: int, decimals_a: int, decimals_b: int) -> Outcome[float]:
    """Price of token A in token B from a Q64.64 square-root price."""

    try:
        root = int(sqrt_price) / SQRT_PRICE_SCALE
        return positive_price(root * root * (10 ** (decimals_a - decimals_b)))
    except (TypeError, ValueError, OverflowError):
        return ABSENT


def within_band(candidate: float, anchor: float, band: float) -> bool:
    return anchor / band < candidate < anchor * band


@dataclass(slots=True)
class _PoolReserves:
    pool: PoolReserveState
    token_is_a: bool
    token_reserve: float
    reference_reserve: float

    @property
    def score(self) -> float:
        return self.token_reserve + self.reference_reserve


class PoolPriceOracle:
    """Prices a mint from the deepest pools pairing it with the reference asset."""

    def __init__(self, source: ChainDataSource, config: Optional[AppConfig] = None) -> None:
        self._source = source
        self._config = config or get_app_config()
        self._pricing = self._config.pricing
        self._workers = self._config.rpc.request_concurrency
        self._logger = get_logger(__name__)

    def quote(self, mint: str) -> OracleResult:
        """Never raises; any failure yields an empty result."""

        try:
            return self._quote(mint)
        except Exception as exc:  # noqa: BLE001
            METRICS.increment("oracle.pool.failures")
            self._logger.warning("Pool oracle failed for %s: %s", mint, exc)
            return OracleResult.empty()

    def _quote(self, mint: str) -> OracleResult:
        reference = self._pricing.reference_mint
        candidates = [
            pool
            for pool in self._source.list_pools(mint, reference)
            if pool.involves(mint) and pool.involves(reference)
        ][: self._pricing.max_pools_scanned]
        if not candidates:
            return OracleResult.empty()

        reserves = self._load_reserves(candidates, mint)
        ranked = sorted(reserves, key=lambda item: item.score, reverse=True)
        retained = ranked[: self._pricing.max_pools_retained]

        decimals = fan_out(
            self._source.get_mint_decimals,
            [pool_mint for item in retained for pool_mint in (item.pool.token_a_mint, item.pool.token_b_mint)],
            self._workers,
        )
        quotes = [self._price_pool(item, decimals) for item in retained]

        best_price, best_liquidity = quotes[0]
        pools = [
            PoolQuote(
                pool_address=item.pool.address,
                token_a=item.pool.token_a_mint,
                token_b=item.pool.token_b_mint,
                price=price,
                liquidity=liquidity,
                kind=PoolKind.POOL,
            )
            for item, (price, liquidity) in zip(retained, quotes)
        ]
        return OracleResult(price=best_price, liquidity=best_liquidity, pools=pools)

    def _load_reserves(self, pools: List[PoolReserveState], mint: str) -> List[_PoolReserves]:
        vaults = [vault for pool in pools for vault in (pool.token_a_vault, pool.token_b_vault)]
        balances = fan_out(self._source.get_token_account_balance, vaults, self._workers)
        loaded: List[_PoolReserves] = []
        for pool in pools:
            token_is_a = pool.token_a_mint == mint
            token_vault = pool.token_a_vault if token_is_a else pool.token_b_vault
            reference_vault = pool.token_b_vault if token_is_a else pool.token_a_vault
            loaded.append(
                _PoolReserves(
                    pool=pool,
                    token_is_a=token_is_a,
                    token_reserve=balances.get(token_vault) or 0.0,
                    reference_reserve=balances.get(reference_vault) or 0.0,
                )
            )
        return loaded

    def _sqrt_candidate(self, item: _PoolReserves, decimals: Dict[str, Optional[int]]) -> Outcome[float]:
        pool = item.pool
        if not pool.sqrt_price:
            return ABSENT
        decimals_a = decimals.get(pool.token_a_mint)
        decimals_b = decimals.get(pool.token_b_mint)
        if decimals_a is None or decimals_b is None:
            return ABSENT
        price_ab = price_from_sqrt_price(pool.sqrt_price, decimals_a, decimals_b)
        if item.token_is_a:
            return price_ab
        return price_ab.map(lambda value: 1.0 / value)

    def _price_pool(
        self, item: _PoolReserves, decimals: Dict[str, Optional[int]]
    ) -> Tuple[Optional[float], Optional[float]]:
        vault_ratio = safe_ratio(item.reference_reserve, item.token_reserve)
        sqrt_candidate = self._sqrt_candidate(item, decimals)
        band = self._pricing.sqrt_price_band

        chosen: Outcome[float] = vault_ratio
        if sqrt_candidate.is_ok and vault_ratio.is_ok:
            if within_band(sqrt_candidate.value, vault_ratio.value, band):
                chosen = sqrt_candidate
        elif sqrt_candidate.is_ok:
            self._logger.debug(
                "Ignoring sqrt price for %s without a vault-ratio anchor", item.pool.address
            )

        price = chosen.value_or(None)
        if price is not None:
            liquidity = item.reference_reserve + item.token_reserve * price
        else:
            liquidity = item.reference_reserve
        return price, liquidity


__all__ = ["PoolPriceOracle", "fan_out", "price_from_sqrt_price", "within_band"]
