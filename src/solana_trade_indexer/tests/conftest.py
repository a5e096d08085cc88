from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pytest
from solders.pubkey import Pubkey

from solana_trade_indexer.config.settings import (
    AppConfig,
    PricingConfig,
    ProgramsConfig,
    RPCConfig,
    StorageConfig,
)
from solana_trade_indexer.datalake.schemas import (
    BalanceRecord,
    CurveState,
    MintInfo,
    PoolReserveState,
    TransactionEnvelope,
)
from solana_trade_indexer.monitoring.metrics import METRICS

REFERENCE_MINT = "So11111111111111111111111111111111111111112"


def new_key() -> str:
    return str(Pubkey.new_unique())


def balance(index: int, mint: str, owner: Optional[str], amount: float) -> BalanceRecord:
    return BalanceRecord(account_index=index, mint=mint, owner=owner, ui_amount=amount)


class FakeChain:
    """In-memory chain data source. Methods named in ``failing`` raise."""

    def __init__(self) -> None:
        self.decimals: Dict[str, int] = {REFERENCE_MINT: 9}
        self.supply: Dict[str, float] = {}
        self.balances: Dict[str, float] = {}
        self.pools: List[PoolReserveState] = []
        self.curves: Dict[str, CurveState] = {}
        self.swap_out: Optional[int] = None
        self.progress: Dict[str, float] = {}
        self.slot = 4242
        self.transactions: Dict[str, TransactionEnvelope] = {}
        self.block_times: Dict[int, datetime] = {}
        self.failing: Set[str] = set()
        self.swap_calls: List[Tuple[int, int]] = []

    def _check(self, name: str) -> None:
        if name in self.failing:
            raise ConnectionError(f"{name} unavailable")

    def get_mint_info(self, mint: str) -> MintInfo:
        self._check("get_mint_info")
        return MintInfo(supply=self.supply.get(mint), decimals=self.decimals.get(mint))

    def get_mint_decimals(self, mint: str) -> Optional[int]:
        self._check("get_mint_decimals")
        return self.decimals.get(mint)

    def get_token_account_balance(self, account: str) -> Optional[float]:
        self._check("get_token_account_balance")
        return self.balances.get(account)

    def list_pools(self, mint: str, reference_mint: str) -> List[PoolReserveState]:
        self._check("list_pools")
        return list(self.pools)

    def get_curve(self, base_mint: str) -> Optional[CurveState]:
        self._check("get_curve")
        return self.curves.get(base_mint)

    def curve_swap_quote(self, curve: CurveState, amount_in: int, current_point: int) -> Optional[int]:
        self._check("curve_swap_quote")
        self.swap_calls.append((amount_in, current_point))
        return self.swap_out

    def get_curve_progress(self, curve: CurveState) -> Optional[float]:
        self._check("get_curve_progress")
        return self.progress.get(curve.address)

    def get_slot(self) -> int:
        self._check("get_slot")
        return self.slot

    def get_block_time(self, slot: int) -> Optional[datetime]:
        return self.block_times.get(slot)

    def get_transaction(self, signature: str, program_id: str) -> Optional[TransactionEnvelope]:
        return self.transactions.get(signature)

    def add_pool(
        self,
        token_a: str,
        token_b: str,
        reserve_a: Optional[float],
        reserve_b: Optional[float],
        sqrt_price: Optional[int] = None,
    ) -> PoolReserveState:
        pool = PoolReserveState(
            address=new_key(),
            token_a_mint=token_a,
            token_b_mint=token_b,
            token_a_vault=new_key(),
            token_b_vault=new_key(),
            sqrt_price=sqrt_price,
        )
        if reserve_a is not None:
            self.balances[pool.token_a_vault] = reserve_a
        if reserve_b is not None:
            self.balances[pool.token_b_vault] = reserve_b
        self.pools.append(pool)
        return pool


class BarrierChain(FakeChain):
    """Fake whose ``gated`` methods block until ``parties`` calls are in flight together."""

    def __init__(self, gated: Iterable[str], parties: int, timeout: float = 5.0) -> None:
        super().__init__()
        self.gated = set(gated)
        self.barrier = threading.Barrier(parties, timeout=timeout)

    def _check(self, name: str) -> None:
        if name in self.gated:
            self.barrier.wait()
        super()._check(name)


@pytest.fixture(autouse=True)
def _reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        rpc=RPCConfig(request_concurrency=4),
        programs=ProgramsConfig(),
        pricing=PricingConfig(reference_mint=REFERENCE_MINT),
        storage=StorageConfig(database_path=tmp_path / "indexer.sqlite3"),
    )
