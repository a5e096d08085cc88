"""Join pre/post token balance snapshots into per-mint and per-owner deltas."""

from __future__ import annotations

import math
from typing import Any, Iterable, List, Mapping, Optional

from ..datalake.schemas import BalanceEntry, BalanceJoin, BalanceRecord
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS

_logger = get_logger(__name__)


def _field(raw: Any, *names: str) -> Any:
    """Read the first present attribute or key among ``names``."""

    for name in names:
        if isinstance(raw, Mapping):
            if name in raw and raw[name] is not None:
                return raw[name]
        else:
            value = getattr(raw, name, None)
            if value is not None:
                return value
    return None


def _parse_ui_amount(token_amount: Any) -> float:
    if token_amount is None:
        return 0.0
    ui_amount = _field(token_amount, "uiAmount", "ui_amount")
    if ui_amount is not None:
        try:
            return float(ui_amount)
        except (TypeError, ValueError):
            pass
    ui_string = _field(token_amount, "uiAmountString", "ui_amount_string")
    if ui_string is not None:
        try:
            return float(ui_string)
        except (TypeError, ValueError):
            pass
    amount = _field(token_amount, "amount")
    decimals = _field(token_amount, "decimals")
    if amount is not None and decimals is not None:
        try:
            return int(amount) / (10 ** int(decimals))
        except (TypeError, ValueError):
            return 0.0
    return 0.0


def coerce_balance_record(raw: Any) -> Optional[BalanceRecord]:
    """Build a :class:`BalanceRecord` from an RPC dict or a ``solders`` balance object.

    Returns ``None`` when the record has no usable mint or account index.
    """

    if isinstance(raw, BalanceRecord):
        return raw
    mint = _field(raw, "mint")
    index = _field(raw, "accountIndex", "account_index")
    if mint is None or index is None:
        return None
    try:
        account_index = int(index)
    except (TypeError, ValueError):
        return None
    owner = _field(raw, "owner")
    token_amount = _field(raw, "uiTokenAmount", "ui_token_amount")
    return BalanceRecord(
        account_index=account_index,
        mint=str(mint),
        owner=str(owner) if owner is not None else None,
        ui_amount=_parse_ui_amount(token_amount),
    )


def coerce_balance_records(raw_records: Optional[Iterable[Any]]) -> List[BalanceRecord]:
    records: List[BalanceRecord] = []
    skipped = 0
    for raw in raw_records or []:
        record = coerce_balance_record(raw)
        if record is None:
            skipped += 1
            continue
        records.append(record)
    if skipped:
        METRICS.increment("balances.skipped", skipped)
        _logger.debug("Skipped %d malformed balance records", skipped)
    return records


def _finite_or_zero(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def join_balance_snapshots(
    pre: Iterable[BalanceRecord],
    post: Iterable[BalanceRecord],
) -> BalanceJoin:
    """Pair balances on ``(mint, account_index)`` and accumulate net deltas.

    An account may appear on only one side (created or drained within the
    transaction); the missing side counts as zero. Non-finite amounts
    contribute nothing. Never raises.
    """

    join = BalanceJoin()
    for record in pre:
        key = (record.mint, record.account_index)
        join.entries[key] = BalanceEntry(
            mint=record.mint,
            account_index=record.account_index,
            owner=record.owner,
            pre=_finite_or_zero(record.ui_amount),
        )
    for record in post:
        key = (record.mint, record.account_index)
        entry = join.entries.get(key)
        if entry is None:
            entry = BalanceEntry(mint=record.mint, account_index=record.account_index)
            join.entries[key] = entry
        entry.post = _finite_or_zero(record.ui_amount)
        if record.owner:
            entry.owner = record.owner

    for entry in join.entries.values():
        if entry.pre is None and entry.post is None:
            continue
        delta = entry.delta
        join.mint_delta[entry.mint] = join.mint_delta.get(entry.mint, 0.0) + delta
        if entry.owner:
            owner_deltas = join.owner_mint_delta.setdefault(entry.owner, {})
            owner_deltas[entry.mint] = owner_deltas.get(entry.mint, 0.0) + delta
    return join


def join_raw_balances(pre: Optional[Iterable[Any]], post: Optional[Iterable[Any]]) -> BalanceJoin:
    return join_balance_snapshots(coerce_balance_records(pre), coerce_balance_records(post))


__all__ = [
    "coerce_balance_record",
    "coerce_balance_records",
    "join_balance_snapshots",
    "join_raw_balances",
]
