"""Chain connectivity: the data-source contract and its Solana RPC implementation."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from solana.rpc.api import Client
from solders.pubkey import Pubkey
from solders.signature import Signature
from tenacity import Retrying, stop_after_attempt, wait_fixed

from ..config.settings import RPCConfig, get_app_config
from ..datalake.schemas import CurveState, MintInfo, PoolReserveState, TransactionEnvelope
from ..monitoring.logger import get_logger
from .balances import coerce_balance_records


class VenueStateProvider(Protocol):
    """Venue-specific account decoding (pool discovery, curve state, curve math)."""

    def list_pools(self, mint: str, reference_mint: str) -> List[PoolReserveState]:
        ...

    def get_curve(self, base_mint: str) -> Optional[CurveState]:
        ...

    def curve_swap_quote(self, curve: CurveState, amount_in: int, current_point: int) -> Optional[int]:
        ...

    def get_curve_progress(self, curve: CurveState) -> Optional[float]:
        ...


class ChainDataSource(VenueStateProvider, Protocol):
    """Everything the price oracles and the pipeline read from the chain.

    Lookups of accounts that do not exist return ``None`` (or an empty list)
    instead of raising.
    """

    def get_mint_info(self, mint: str) -> MintInfo:
        ...

    def get_mint_decimals(self, mint: str) -> Optional[int]:
        ...

    def get_token_account_balance(self, account: str) -> Optional[float]:
        ...

    def get_slot(self) -> int:
        ...

    def get_block_time(self, slot: int) -> Optional[datetime]:
        ...

    def get_transaction(self, signature: str, program_id: str) -> Optional[TransactionEnvelope]:
        ...


def _account_key(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        key = value.get("pubkey")
        return str(key) if key else None
    return str(value) if value is not None else None


def _to_datetime(block_time: Optional[int]) -> Optional[datetime]:
    if not block_time:
        return None
    return datetime.fromtimestamp(int(block_time), timezone.utc)


def count_program_invocations(log_messages: List[str], program_id: str) -> int:
    """Number of top-level or inner invocations of ``program_id`` in the logs, at least one."""

    marker = f"Program {program_id} invoke"
    count = sum(1 for line in log_messages if line.startswith(marker))
    return max(count, 1)


def envelope_from_rpc(
    payload: Optional[Dict[str, Any]],
    signature: str,
    program_id: str,
) -> Optional[TransactionEnvelope]:
    """Typed view of a ``getTransaction`` result. ``None`` when the payload is unusable."""

    if not isinstance(payload, dict):
        return None
    transaction = payload.get("transaction") or {}
    message = transaction.get("message") if isinstance(transaction, dict) else None
    meta = payload.get("meta") or {}
    if not isinstance(message, dict) or not isinstance(meta, dict):
        return None
    account_keys = [key for key in map(_account_key, message.get("accountKeys") or []) if key]
    logs = [str(line) for line in meta.get("logMessages") or []]
    slot = payload.get("slot")
    return TransactionEnvelope(
        signature=signature,
        program_id=program_id,
        slot=int(slot) if slot is not None else None,
        block_time=_to_datetime(payload.get("blockTime")),
        account_keys=account_keys,
        pre_balances=coerce_balance_records(meta.get("preTokenBalances")),
        post_balances=coerce_balance_records(meta.get("postTokenBalances")),
        log_messages=logs,
        instruction_count=count_program_invocations(logs, program_id),
    )


class SolanaRpcDataSource:
    """Reads mint, balance and transaction data over JSON-RPC with endpoint fallback.

    Pool discovery and curve math need venue SDK decoding and are delegated to
    ``venues``; without one, those lookups report nothing.
    """

    def __init__(
        self,
        config: Optional[RPCConfig] = None,
        venues: Optional[VenueStateProvider] = None,
    ) -> None:
        self._config = config or get_app_config().rpc
        self._endpoints = [str(self._config.primary_url), *map(str, self._config.fallback_urls)]
        self._venues = venues
        self._logger = get_logger(__name__)
        self._thread_local = threading.local()

    def _clients_for_thread(self) -> List[Client]:
        clients: Optional[List[Client]] = getattr(self._thread_local, "clients", None)
        if clients is None:
            clients = [
                Client(endpoint, commitment=self._config.commitment, timeout=self._config.request_timeout)
                for endpoint in self._endpoints
            ]
            self._thread_local.clients = clients
        return clients

    def _call_endpoints(self, method_name: str, *args, **kwargs) -> Any:
        last_exc: Optional[Exception] = None
        for endpoint, client in zip(self._endpoints, self._clients_for_thread()):
            method = getattr(client, method_name)
            try:
                result = method(*args, **kwargs)
                if hasattr(result, "to_json"):
                    return json.loads(result.to_json())
                return result
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                self._logger.debug("RPC %s failed on %s: %s", method_name, endpoint, exc)
        if last_exc is not None:
            raise last_exc
        raise RuntimeError(f"RPC {method_name} failed for unknown reasons")

    def _execute(self, method_name: str, *args, **kwargs) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_fixed(self._config.retry_wait_seconds),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._call_endpoints(method_name, *args, **kwargs)
        raise RuntimeError(f"RPC {method_name} exhausted retries")  # pragma: no cover

    def get_mint_info(self, mint: str) -> MintInfo:
        mint_pubkey = Pubkey.from_string(mint)
        try:
            response = self._execute("get_token_supply", mint_pubkey)
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Token supply lookup failed for %s: %s", mint, exc)
            return MintInfo()
        value = (response or {}).get("result", {}).get("value") or {}
        decimals = value.get("decimals")
        amount = value.get("amount")
        if decimals is None:
            return MintInfo()
        supply: Optional[float] = None
        if amount is not None:
            try:
                supply = int(amount) / (10 ** int(decimals))
            except (TypeError, ValueError):
                supply = None
        return MintInfo(supply=supply, decimals=int(decimals))

    def get_mint_decimals(self, mint: str) -> Optional[int]:
        return self.get_mint_info(mint).decimals

    def get_token_account_balance(self, account: str) -> Optional[float]:
        account_pubkey = Pubkey.from_string(account)
        try:
            response = self._execute("get_token_account_balance", account_pubkey)
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Balance lookup failed for %s: %s", account, exc)
            return None
        value = (response or {}).get("result", {}).get("value") or {}
        raw = value.get("uiAmountString") or value.get("amount")
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    def get_slot(self) -> int:
        response = self._execute("get_slot")
        return int(response.get("result", 0))

    def get_block_time(self, slot: int) -> Optional[datetime]:
        try:
            response = self._execute("get_block_time", slot)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("Failed to get block time for slot %s: %s", slot, exc)
            return None
        return _to_datetime(response.get("result"))

    def get_transaction(self, signature: str, program_id: str) -> Optional[TransactionEnvelope]:
        try:
            response = self._execute(
                "get_transaction",
                Signature.from_string(signature),
                encoding="json",
                max_supported_transaction_version=0,
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.error("Failed to fetch transaction %s: %s", signature, exc)
            return None
        return envelope_from_rpc(response.get("result"), signature, program_id)

    def list_pools(self, mint: str, reference_mint: str) -> List[PoolReserveState]:
        if self._venues is None:
            return []
        return self._venues.list_pools(mint, reference_mint)

    def get_curve(self, base_mint: str) -> Optional[CurveState]:
        if self._venues is None:
            return None
        return self._venues.get_curve(base_mint)

    def curve_swap_quote(self, curve: CurveState, amount_in: int, current_point: int) -> Optional[int]:
        if self._venues is None:
            return None
        return self._venues.curve_swap_quote(curve, amount_in, current_point)

    def get_curve_progress(self, curve: CurveState) -> Optional[float]:
        if self._venues is None:
            return None
        return self._venues.get_curve_progress(curve)


__all__ = [
    "ChainDataSource",
    "SolanaRpcDataSource",
    "VenueStateProvider",
    "count_program_invocations",
    "envelope_from_rpc",
]
