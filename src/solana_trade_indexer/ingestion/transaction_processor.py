"""Per-transaction pipeline: balance deltas in, trades, metrics and events out."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..analysis.classifier import TradeClassifier
from ..analysis.log_hints import classify_event_logs
from ..analysis.primary_asset import select_primary_asset
from ..config.settings import AppConfig, get_app_config
from ..datalake.schemas import (
    BalanceJoin,
    ClassifiedTrade,
    EventType,
    PrimarySelection,
    ProcessedTransaction,
    ProgramEventRecord,
    TokenMetrics,
    TransactionEnvelope,
)
from ..datalake.storage import TradeStore
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from .balances import join_balance_snapshots
from .chain import ChainDataSource
from .token_metrics import TokenMetricsService


class TransactionProcessor:
    """Classifies one program transaction and records everything derived from it."""

    def __init__(
        self,
        source: ChainDataSource,
        store: TradeStore,
        metrics_service: Optional[TokenMetricsService] = None,
        classifier: Optional[TradeClassifier] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        self._config = config or get_app_config()
        self._source = source
        self._store = store
        self._metrics_service = metrics_service or TokenMetricsService(source, store, self._config)
        self._classifier = classifier or TradeClassifier(
            self._config.pricing, self._config.programs.venue_program_ids()
        )
        self._reference_mint = self._config.pricing.reference_mint
        self._logger = get_logger(__name__)

    def process_signature(
        self, signature: str, program_id: str, slot: Optional[int] = None
    ) -> Optional[ProcessedTransaction]:
        envelope = self._source.get_transaction(signature, program_id)
        if envelope is None:
            self._logger.warning("Transaction %s not found", signature)
            return None
        if envelope.slot is None:
            envelope.slot = slot
        if envelope.block_time is None and envelope.slot is not None:
            envelope.block_time = self._source.get_block_time(envelope.slot)
        return self.process(envelope)

    def process(self, envelope: TransactionEnvelope) -> ProcessedTransaction:
        with correlation_scope(envelope.signature):
            join = join_balance_snapshots(envelope.pre_balances, envelope.post_balances)
            selection = select_primary_asset(join, self._reference_mint)
            metrics: Optional[TokenMetrics] = None
            trade: Optional[ClassifiedTrade] = None
            try:
                metrics, trade = self._process_deltas(envelope, join, selection)
            except Exception as exc:  # noqa: BLE001
                METRICS.increment("transactions.failed")
                self._logger.exception(
                    "Delta processing failed for %s: %s", envelope.signature, exc
                )
            events = self._record_events(envelope, join, selection, trade)
            METRICS.increment("transactions.processed")
            self._logger.info(
                "Processed transaction %s",
                envelope.signature,
                extra={
                    "mint": selection.mint,
                    "side": trade.side.value if trade else None,
                    "price": trade.price if trade else None,
                },
            )
            return ProcessedTransaction(
                signature=envelope.signature,
                join=join,
                selection=selection,
                metrics=metrics,
                trade=trade,
                events=events,
            )

    def _process_deltas(
        self,
        envelope: TransactionEnvelope,
        join: BalanceJoin,
        selection: PrimarySelection,
    ) -> Tuple[Optional[TokenMetrics], Optional[ClassifiedTrade]]:
        for holder in join.holder_balances():
            self._store.record_holder(holder)
        if selection.mint is None:
            self._logger.debug("No primary asset in %s", envelope.signature)
            return None, None

        mint = selection.mint
        metrics = self._metrics_service.compute(mint, join.mint_delta)
        # A price implied by this trade's own deltas is re-derived by the classifier.
        oracle_price = metrics.price if metrics.price_source != "trade_deltas" else None
        trade = self._classifier.classify(
            signature=envelope.signature,
            program_id=envelope.program_id,
            join=join,
            selection=selection,
            payer=envelope.payer,
            block_time=envelope.block_time,
            oracle_price=oracle_price,
        )
        if trade is None:
            return metrics, None

        reference_abs = abs(trade.reference_delta)
        self._store.record_token_tx(envelope.signature, mint, trade.side, envelope.block_time)
        if reference_abs > 0:
            self._store.record_volume(mint, reference_abs, envelope.block_time)
        if trade.price is not None:
            self._store.record_ohlc_trade(mint, trade.price, reference_abs, envelope.block_time)
        if trade.should_record():
            self._store.insert_trade(trade)
        metrics = self._metrics_service.persist(metrics)
        return metrics, trade

    def _record_events(
        self,
        envelope: TransactionEnvelope,
        join: BalanceJoin,
        selection: PrimarySelection,
        trade: Optional[ClassifiedTrade],
    ) -> List[ProgramEventRecord]:
        if trade is not None:
            event_type = trade.event_type
        elif selection.mint is None:
            event_type = classify_event_logs(envelope.log_messages)
        else:
            event_type = EventType.UNKNOWN
        parsed: Dict[str, Any] = {
            "accounts": list(envelope.account_keys),
            "amounts": {
                "base": trade.base_amount if trade else None,
                "quote": trade.quote_value if trade else None,
                "price": trade.price if trade else None,
            },
            "primaryMint": selection.mint,
            "primaryDelta": selection.net_delta,
            "mintDeltas": dict(join.mint_delta),
        }
        events: List[ProgramEventRecord] = []
        for index in range(max(envelope.instruction_count, 1)):
            event = ProgramEventRecord(
                signature=envelope.signature,
                instruction_index=index,
                event_type=event_type,
                program_id=envelope.program_id,
                block_time=envelope.block_time,
                parsed=parsed,
                raw_logs=list(envelope.log_messages),
            )
            try:
                self._store.upsert_event(event)
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "Failed to store event %s#%d: %s", envelope.signature, index, exc
                )
                continue
            events.append(event)
        return events


__all__ = ["TransactionProcessor"]
