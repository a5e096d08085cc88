"""Compute and persist the reconciled metrics of a token."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Mapping, Optional, Protocol

from solders.pubkey import Pubkey

from ..analysis.reconciler import MetricsReconciler
from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import MintInfo, TokenMetrics, VolumeStats
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .chain import ChainDataSource
from .curve_oracle import BondingCurveOracle
from .pool_oracle import PoolPriceOracle


class MetricsStore(Protocol):
    def get_volume_stats(self, mint: str) -> Optional[VolumeStats]:
        ...

    def upsert_token_metrics(self, metrics: TokenMetrics) -> None:
        ...


class TokenMetricsService:
    """Runs the mint lookup and both oracles concurrently, then reconciles."""

    def __init__(
        self,
        source: ChainDataSource,
        store: Optional[MetricsStore] = None,
        config: Optional[AppConfig] = None,
        pool_oracle: Optional[PoolPriceOracle] = None,
        curve_oracle: Optional[BondingCurveOracle] = None,
        reconciler: Optional[MetricsReconciler] = None,
    ) -> None:
        self._config = config or get_app_config()
        self._source = source
        self._store = store
        self._pool_oracle = pool_oracle or PoolPriceOracle(source, self._config)
        self._curve_oracle = curve_oracle or BondingCurveOracle(source, self._config)
        self._reconciler = reconciler or MetricsReconciler(self._config.pricing.reference_mint)
        self._logger = get_logger(__name__)

    def _volume_stats(self, mint: str) -> Optional[VolumeStats]:
        if self._store is None:
            return None
        try:
            return self._store.get_volume_stats(mint)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("Volume stats unavailable for %s: %s", mint, exc)
            return None

    def _mint_info(self, mint: str, future: Future[MintInfo]) -> MintInfo:
        try:
            return future.result()
        except Exception as exc:  # noqa: BLE001
            METRICS.increment("metrics.mint_info.failures")
            self._logger.warning("Mint info unavailable for %s: %s", mint, exc)
            return MintInfo()

    def compute(self, mint: str, mint_deltas: Optional[Mapping[str, float]] = None) -> TokenMetrics:
        """Reconciled metrics for ``mint``. Raises ``ValueError`` for a malformed mint."""

        Pubkey.from_string(mint)
        with METRICS.timer("metrics.compute.ms"):
            with ThreadPoolExecutor(max_workers=3) as executor:
                mint_info_future = executor.submit(self._source.get_mint_info, mint)
                pool_future = executor.submit(self._pool_oracle.quote, mint)
                curve_future = executor.submit(self._curve_oracle.quote, mint)
                mint_info = self._mint_info(mint, mint_info_future)
                pool_result = pool_future.result()
                curve_result = curve_future.result()
        return self._reconciler.reconcile(
            mint,
            pool_result,
            curve_result,
            supply=mint_info.supply,
            decimals=mint_info.decimals,
            volume=self._volume_stats(mint),
            mint_deltas=mint_deltas,
        )

    def persist(self, metrics: TokenMetrics) -> TokenMetrics:
        """Refresh the volume windows and upsert the snapshot."""

        if self._store is None:
            return metrics
        metrics.volume = self._volume_stats(metrics.mint) or metrics.volume
        self._store.upsert_token_metrics(metrics)
        self._logger.debug(
            "Updated metrics for %s",
            metrics.mint,
            extra={"price": metrics.price, "price_source": metrics.price_source},
        )
        return metrics

    def update(self, mint: str, mint_deltas: Optional[Mapping[str, float]] = None) -> TokenMetrics:
        return self.persist(self.compute(mint, mint_deltas))


__all__ = ["MetricsStore", "TokenMetricsService"]
