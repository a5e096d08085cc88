"""Tests for the token metrics service."""

from __future__ import annotations

import pytest

from solana_trade_indexer.analysis.tiers import Tier, resolve_first
from solana_trade_indexer.datalake.schemas import CurveState, VolumeStats
from solana_trade_indexer.datalake.storage import SQLiteStorage
from solana_trade_indexer.ingestion.token_metrics import TokenMetricsService
from solana_trade_indexer.monitoring.metrics import METRICS
from solana_trade_indexer.utils.outcome import ABSENT, Ok, positive_price, safe_ratio

from conftest import REFERENCE_MINT, BarrierChain, new_key


def _curve(chain, mint: str, progress: float) -> None:
    curve = CurveState(
        address=new_key(),
        base_mint=mint,
        quote_mint=REFERENCE_MINT,
        base_reserve=1_000_000,
        quote_reserve=2_000_000,
        base_decimals=6,
        quote_decimals=6,
    )
    chain.curves[mint] = curve
    chain.progress[curve.address] = progress


def test_curve_scenario_prices_exactly_two(chain, app_config) -> None:
    mint = new_key()
    chain.supply[mint] = 500.0
    chain.decimals[mint] = 6
    _curve(chain, mint, progress=0.2)

    metrics = TokenMetricsService(chain, config=app_config).compute(mint)

    assert metrics.price == 2.0
    assert metrics.market_cap == 1_000.0
    assert metrics.decimals == 6
    assert metrics.price_source == "active_curve"
    assert "metrics.compute.ms" in METRICS.snapshot()["histograms"]


def test_migrated_token_uses_pool_price(chain, app_config) -> None:
    mint = new_key()
    chain.decimals[mint] = 9
    _curve(chain, mint, progress=1.0)
    chain.add_pool(mint, REFERENCE_MINT, 100.0, 80.0)

    metrics = TokenMetricsService(chain, config=app_config).compute(mint)

    assert metrics.price == pytest.approx(0.8)
    assert metrics.price_source == "migrated_pool"
    assert len(metrics.pools) == 2


def test_migrated_curve_without_pool_state_uses_curve(chain, app_config) -> None:
    mint = new_key()
    _curve(chain, mint, progress=1.0)
    chain.failing.add("list_pools")

    metrics = TokenMetricsService(chain, config=app_config).compute(mint)

    assert metrics.price == 2.0
    assert metrics.price_source == "curve_only"
    assert METRICS.get("oracle.pool.failures") == 1


def test_unreachable_oracles_fall_back_to_trade_deltas(chain, app_config) -> None:
    mint = new_key()
    chain.failing.update({"list_pools", "get_curve"})

    metrics = TokenMetricsService(chain, config=app_config).compute(
        mint, {mint: 25.0, REFERENCE_MINT: -10.0}
    )

    assert metrics.price == pytest.approx(0.4)
    assert metrics.price_source == "trade_deltas"


def test_malformed_mint_propagates(chain, app_config) -> None:
    with pytest.raises(ValueError):
        TokenMetricsService(chain, config=app_config).compute("not a mint")


def test_update_persists_with_volume(chain, app_config) -> None:
    mint = new_key()
    _curve(chain, mint, progress=0.5)
    storage = SQLiteStorage(app_config.storage.database_path)

    class _Store:
        def __init__(self) -> None:
            self.saved = []

        def get_volume_stats(self, mint: str):
            return VolumeStats(volume_1h=3.0, trades_1h=1)

        def upsert_token_metrics(self, metrics) -> None:
            self.saved.append(metrics)
            storage.upsert_token_metrics(metrics)

    store = _Store()
    metrics = TokenMetricsService(chain, store, app_config).update(mint)

    assert store.saved == [metrics]
    assert metrics.volume.volume_1h == 3.0
    token = storage.get_token(mint)
    assert token is not None
    assert token["volume_1h"] == 3.0
    assert token["trades_1h"] == 1


def test_volume_failure_is_tolerated(chain, app_config) -> None:
    mint = new_key()
    _curve(chain, mint, progress=0.5)

    class _BrokenStore:
        def get_volume_stats(self, mint: str):
            raise RuntimeError("database locked")

        def upsert_token_metrics(self, metrics) -> None:
            pass

    metrics = TokenMetricsService(chain, _BrokenStore(), app_config).update(mint)

    assert metrics.price == 2.0
    assert metrics.volume == VolumeStats()


def test_outcome_helpers() -> None:
    assert positive_price(float("inf")) is ABSENT
    assert positive_price(True) is ABSENT
    assert safe_ratio(1.0, 0.0) is ABSENT
    assert safe_ratio(3.0, 2.0) == Ok(1.5)
    assert ABSENT.or_else(Ok(2.0)).value_or(None) == 2.0
    assert Ok(2.0).map(lambda value: value * 2).value == 4.0


def test_resolve_first_returns_first_matching_tier() -> None:
    tiers = [
        Tier("never", lambda n: False, lambda n: "x"),
        Tier("positive", lambda n: n > 0, lambda n: n * 10),
        Tier("fallback", lambda n: True, lambda n: 0),
    ]

    assert resolve_first(tiers, 3) == ("positive", 30)
    assert resolve_first(tiers, -1) == ("fallback", 0)
    assert resolve_first(tiers[:1], 5) == (None, None)


def test_mint_info_failure_leaves_supply_unknown(chain, app_config) -> None:
    mint = new_key()
    chain.supply[mint] = 500.0
    _curve(chain, mint, progress=0.2)
    chain.failing.add("get_mint_info")

    metrics = TokenMetricsService(chain, config=app_config).compute(mint)

    assert metrics.price == 2.0
    assert metrics.price_source == "active_curve"
    assert metrics.supply is None
    assert metrics.market_cap is None
    assert METRICS.get("metrics.mint_info.failures") == 1


def test_mint_lookup_and_oracles_run_concurrently(app_config) -> None:
    chain = BarrierChain({"get_mint_info", "list_pools", "get_curve"}, parties=3)
    mint = new_key()
    chain.supply[mint] = 500.0
    _curve(chain, mint, progress=0.2)

    metrics = TokenMetricsService(chain, config=app_config).compute(mint)

    assert not chain.barrier.broken
    assert metrics.supply == 500.0
    assert metrics.price == 2.0
    assert metrics.market_cap == 1_000.0
