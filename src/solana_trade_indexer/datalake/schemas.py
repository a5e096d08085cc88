"""Data models shared by the balance joiner, the oracles, and the store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

MintDelta = Dict[str, float]
OwnerMintDelta = Dict[str, Dict[str, float]]


class PoolKind(str, Enum):
    """Liquidity venue that produced a quote."""

    CURVE = "curve"
    POOL = "pool"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"
    UNKNOWN = "unknown"


class EventType(str, Enum):
    """Classification stored with the raw program event."""

    BUY = "buy"
    SELL = "sell"
    UPDATE = "update"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class BalanceRecord:
    """One side (pre or post) of a chain-reported token balance."""

    account_index: int
    mint: str
    owner: Optional[str]
    ui_amount: float


@dataclass(slots=True)
class BalanceEntry:
    """Pre and post balance of one token account within a transaction."""

    mint: str
    account_index: int
    owner: Optional[str] = None
    pre: Optional[float] = None
    post: Optional[float] = None

    @property
    def delta(self) -> float:
        return (self.post or 0.0) - (self.pre or 0.0)


@dataclass(slots=True)
class BalanceJoin:
    """Joined balance snapshots of a single transaction and their net deltas."""

    entries: Dict[Tuple[str, int], BalanceEntry] = field(default_factory=dict)
    mint_delta: MintDelta = field(default_factory=dict)
    owner_mint_delta: OwnerMintDelta = field(default_factory=dict)

    def __iter__(self) -> Iterator[BalanceEntry]:
        return iter(self.entries.values())

    def gross_flow(self, exclude: Optional[str] = None) -> Dict[str, float]:
        """Sum of absolute per-account deltas for every mint."""

        flow: Dict[str, float] = {}
        for entry in self.entries.values():
            if entry.mint == exclude:
                continue
            flow[entry.mint] = flow.get(entry.mint, 0.0) + abs(entry.delta)
        return flow

    def owner_delta(self, owner: Optional[str], mint: Optional[str]) -> float:
        if not owner or not mint:
            return 0.0
        return self.owner_mint_delta.get(owner, {}).get(mint, 0.0)

    def holder_balances(self) -> List["HolderBalance"]:
        holders: List[HolderBalance] = []
        for entry in self.entries.values():
            if entry.owner:
                holders.append(HolderBalance(mint=entry.mint, owner=entry.owner, balance=entry.post or 0.0))
        return holders


@dataclass(slots=True)
class HolderBalance:
    mint: str
    owner: str
    balance: float


@dataclass(slots=True)
class MintInfo:
    """Supply and precision of a mint; either may be unknown."""

    supply: Optional[float] = None
    decimals: Optional[int] = None


@dataclass(slots=True)
class PoolReserveState:
    """Typed view of a constant-product pool pairing two mints."""

    address: str
    token_a_mint: str
    token_b_mint: str
    token_a_vault: str
    token_b_vault: str
    sqrt_price: Optional[int] = None

    def involves(self, mint: str) -> bool:
        return mint in (self.token_a_mint, self.token_b_mint)


@dataclass(slots=True)
class CurveState:
    """Typed view of a bonding curve account and its config."""

    address: str
    base_mint: str
    quote_mint: str
    base_reserve: int
    quote_reserve: int
    base_decimals: Optional[int] = None
    quote_decimals: Optional[int] = None
    activation_type: int = 0
    raw: Any = None


@dataclass(slots=True)
class PoolQuote:
    """Price and depth observed at one liquidity venue."""

    pool_address: str
    token_a: str
    token_b: str
    price: Optional[float]
    liquidity: Optional[float]
    kind: PoolKind
    curve_progress: Optional[float] = None
    volume_24h: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        return payload


@dataclass(slots=True)
class OracleResult:
    """Price, liquidity and venues reported by one oracle for one mint."""

    price: Optional[float] = None
    liquidity: Optional[float] = None
    pools: List[PoolQuote] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "OracleResult":
        return cls()

    @property
    def has_price(self) -> bool:
        return bool(self.pools) and self.price is not None


@dataclass(slots=True)
class VolumeStats:
    volume_5m: Optional[float] = None
    trades_5m: Optional[int] = None
    volume_1h: Optional[float] = None
    trades_1h: Optional[int] = None
    volume_6h: Optional[float] = None
    trades_6h: Optional[int] = None
    volume_24h: Optional[float] = None
    trades_24h: Optional[int] = None


@dataclass(slots=True)
class TokenMetrics:
    """Authoritative price snapshot for a mint; replaces the previous one."""

    mint: str
    price: Optional[float] = None
    liquidity: Optional[float] = None
    supply: Optional[float] = None
    decimals: Optional[int] = None
    market_cap: Optional[float] = None
    pools: List[PoolQuote] = field(default_factory=list)
    volume: VolumeStats = field(default_factory=VolumeStats)
    price_source: Optional[str] = None

    def to_upsert_payload(self) -> Dict[str, Any]:
        """Fields for a partial upsert. Unknown supply, decimals and volume are left out."""

        payload: Dict[str, Any] = {
            "mint_address": self.mint,
            "price": self.price,
            "market_cap": self.market_cap,
            "liquidity": self.liquidity,
            "pools": [pool.to_dict() for pool in self.pools],
        }
        if self.supply is not None:
            payload["supply"] = self.supply
        if self.decimals is not None:
            payload["decimals"] = self.decimals
        for key, value in asdict(self.volume).items():
            if value is None:
                continue
            payload[key] = int(value) if key.startswith("trades_") else value
        return payload


@dataclass(slots=True)
class PrimarySelection:
    """The traded token chosen for a transaction."""

    mint: Optional[str] = None
    net_delta: float = 0.0
    method: str = "none"


@dataclass(slots=True)
class ClassifiedTrade:
    signature: str
    primary_mint: str
    side: TradeSide
    base_amount: Optional[float]
    price: Optional[float]
    quote_value: Optional[float]
    trader: Optional[str]
    block_time: Optional[datetime]
    event_type: EventType = EventType.UNKNOWN
    reference_delta: float = 0.0
    side_source: Optional[str] = None
    price_source: Optional[str] = None

    def should_record(self) -> bool:
        """Whether the trade carries enough data to be stored as a transaction row."""

        if self.block_time is None:
            return False
        if self.base_amount and self.base_amount > 0:
            return True
        return bool(self.price) and abs(self.reference_delta) > 0


@dataclass(slots=True)
class TransactionEnvelope:
    """Typed view of a fetched transaction."""

    signature: str
    program_id: str
    slot: Optional[int] = None
    block_time: Optional[datetime] = None
    account_keys: List[str] = field(default_factory=list)
    pre_balances: List[BalanceRecord] = field(default_factory=list)
    post_balances: List[BalanceRecord] = field(default_factory=list)
    log_messages: List[str] = field(default_factory=list)
    instruction_count: int = 1

    @property
    def payer(self) -> Optional[str]:
        return self.account_keys[0] if self.account_keys else None


@dataclass(slots=True)
class ProgramEventRecord:
    signature: str
    instruction_index: int
    event_type: EventType
    program_id: str
    block_time: Optional[datetime]
    parsed: Dict[str, Any] = field(default_factory=dict)
    raw_logs: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ProcessedTransaction:
    """Everything derived from one transaction by the pipeline."""

    signature: str
    join: BalanceJoin
    selection: PrimarySelection
    metrics: Optional[TokenMetrics] = None
    trade: Optional[ClassifiedTrade] = None
    events: List[ProgramEventRecord] = field(default_factory=list)


__all__ = [
    "BalanceEntry",
    "BalanceJoin",
    "BalanceRecord",
    "ClassifiedTrade",
    "CurveState",
    "EventType",
    "HolderBalance",
    "MintDelta",
    "MintInfo",
    "OracleResult",
    "OwnerMintDelta",
    "PoolKind",
    "PoolQuote",
    "PoolReserveState",
    "PrimarySelection",
    "ProcessedTransaction",
    "ProgramEventRecord",
    "TokenMetrics",
    "TradeSide",
    "TransactionEnvelope",
    "VolumeStats",
]
