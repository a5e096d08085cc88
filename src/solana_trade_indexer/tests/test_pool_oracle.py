"""Tests for the constant-product pool price oracle."""

from __future__ import annotations

import pytest

from solana_trade_indexer.datalake.schemas import PoolKind
from solana_trade_indexer.ingestion.pool_oracle import (
    PoolPriceOracle,
    fan_out,
    price_from_sqrt_price,
    within_band,
)
from solana_trade_indexer.monitoring.metrics import METRICS
from solana_trade_indexer.utils.constants import SQRT_PRICE_SCALE

from conftest import REFERENCE_MINT, BarrierChain, new_key

# Q64.64 encodings of sqrt(price) with equal decimals on both sides.
SQRT_OF_2_25 = 3 * SQRT_PRICE_SCALE // 2
SQRT_OF_16 = 4 * SQRT_PRICE_SCALE
SQRT_OF_0_25 = SQRT_PRICE_SCALE // 2


def _token(chain, decimals: int = 9) -> str:
    mint = new_key()
    chain.decimals[mint] = decimals
    return mint


def test_vault_ratio_price_without_sqrt_price(chain, app_config) -> None:
    mint = _token(chain)
    pool = chain.add_pool(mint, REFERENCE_MINT, 100.0, 200.0)

    result = PoolPriceOracle(chain, app_config).quote(mint)

    assert result.price == pytest.approx(2.0)
    assert result.liquidity == pytest.approx(400.0)
    assert [quote.pool_address for quote in result.pools] == [pool.address]
    assert result.pools[0].kind is PoolKind.POOL


def test_sqrt_price_inside_band_is_preferred(chain, app_config) -> None:
    mint = _token(chain)
    chain.add_pool(mint, REFERENCE_MINT, 100.0, 200.0, sqrt_price=SQRT_OF_2_25)

    result = PoolPriceOracle(chain, app_config).quote(mint)

    assert result.price == pytest.approx(2.25)
    assert result.liquidity == pytest.approx(200.0 + 100.0 * 2.25)


def test_sqrt_price_outside_band_is_rejected(chain, app_config) -> None:
    mint = _token(chain)
    chain.add_pool(mint, REFERENCE_MINT, 100.0, 200.0, sqrt_price=SQRT_OF_16)

    result = PoolPriceOracle(chain, app_config).quote(mint)

    # 16 is outside (2/5, 2*5); the vault ratio stands.
    assert result.price == pytest.approx(2.0)


def test_sqrt_price_is_inverted_when_token_is_side_b(chain, app_config) -> None:
    mint = _token(chain)
    chain.add_pool(REFERENCE_MINT, mint, 400.0, 100.0, sqrt_price=SQRT_OF_0_25)

    result = PoolPriceOracle(chain, app_config).quote(mint)

    assert result.price == pytest.approx(4.0)


def test_sqrt_price_adjusts_for_decimals(chain, app_config) -> None:
    mint = _token(chain, decimals=6)
    # raw sqrt price 2.25 scaled by 10**(6-9) gives 0.00225 reference per token
    chain.add_pool(mint, REFERENCE_MINT, 1000.0, 2.0, sqrt_price=SQRT_OF_2_25)

    result = PoolPriceOracle(chain, app_config).quote(mint)

    assert result.price == pytest.approx(0.00225)


def test_sqrt_price_without_vault_anchor_is_ignored(chain, app_config) -> None:
    mint = _token(chain)
    chain.add_pool(mint, REFERENCE_MINT, None, 50.0, sqrt_price=SQRT_OF_2_25)

    result = PoolPriceOracle(chain, app_config).quote(mint)

    assert result.price is None
    assert result.liquidity == pytest.approx(50.0)
    assert not result.has_price


def test_keeps_two_deepest_pools_and_prices_from_best(chain, app_config) -> None:
    mint = _token(chain)
    chain.add_pool(mint, REFERENCE_MINT, 10.0, 10.0)
    deepest = chain.add_pool(mint, REFERENCE_MINT, 1000.0, 3000.0)
    second = chain.add_pool(mint, REFERENCE_MINT, 100.0, 150.0)
    chain.add_pool(mint, new_key(), 5000.0, 5000.0)

    result = PoolPriceOracle(chain, app_config).quote(mint)

    assert [quote.pool_address for quote in result.pools] == [deepest.address, second.address]
    assert result.price == pytest.approx(3.0)
    assert result.pools[1].price == pytest.approx(1.5)


def test_no_pools_yields_empty_result(chain, app_config) -> None:
    result = PoolPriceOracle(chain, app_config).quote(_token(chain))

    assert result.price is None
    assert result.liquidity is None
    assert result.pools == []


def test_failures_degrade_to_empty_result(chain, app_config) -> None:
    mint = _token(chain)
    chain.add_pool(mint, REFERENCE_MINT, 100.0, 200.0)
    chain.failing.add("get_token_account_balance")

    result = PoolPriceOracle(chain, app_config).quote(mint)

    assert result.pools == []
    assert result.price is None
    assert METRICS.get("oracle.pool.failures") == 1


def test_price_from_sqrt_price_rejects_zero() -> None:
    assert not price_from_sqrt_price(0, 9, 9).is_ok
    assert price_from_sqrt_price(SQRT_PRICE_SCALE, 9, 9).value == pytest.approx(1.0)


def test_within_band_is_exclusive() -> None:
    assert within_band(9.99, 2.0, 5.0)
    assert not within_band(10.0, 2.0, 5.0)
    assert not within_band(0.4, 2.0, 5.0)


def test_fan_out_deduplicates_keys() -> None:
    calls = []

    def square(value: int) -> int:
        calls.append(value)
        return value * value

    assert fan_out(square, [3, 1, 3, 2], max_workers=4) == {3: 9, 1: 1, 2: 4}
    assert sorted(calls) == [1, 2, 3]


def test_vault_balances_are_read_concurrently(app_config) -> None:
    chain = BarrierChain({"get_token_account_balance"}, parties=2)
    mint = _token(chain)
    chain.add_pool(mint, REFERENCE_MINT, 100.0, 200.0)

    result = PoolPriceOracle(chain, app_config).quote(mint)

    # Serial reads would break the barrier and degrade to an empty result.
    assert result.price == pytest.approx(2.0)
    assert not chain.barrier.broken
    assert METRICS.get("oracle.pool.failures") == 0
