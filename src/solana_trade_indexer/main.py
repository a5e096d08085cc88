"""Entrypoint for the Solana trade indexer."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from datetime import timedelta
from typing import Optional

from .config.settings import AppConfig, get_app_config
from .datalake.storage import SQLiteStorage
from .ingestion.chain import SolanaRpcDataSource
from .ingestion.token_metrics import TokenMetricsService
from .ingestion.transaction_processor import TransactionProcessor
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS

logger = get_logger(__name__)


def run_signature(
    signature: str, program_id: str, slot: Optional[int] = None, config: Optional[AppConfig] = None
) -> None:
    app_config = config or get_app_config()
    storage = SQLiteStorage(app_config.storage.database_path)
    source = SolanaRpcDataSource(app_config.rpc)
    processor = TransactionProcessor(source, storage, config=app_config)
    result = processor.process_signature(signature, program_id, slot)
    if result is None:
        logger.warning("Nothing processed for %s", signature)
        return
    summary = {
        "signature": result.signature,
        "primary_mint": result.selection.mint,
        "selection_method": result.selection.method,
        "side": result.trade.side.value if result.trade else None,
        "price": result.trade.price if result.trade else None,
        "events": len(result.events),
    }
    print(json.dumps(summary, indent=2))


def run_metrics(mint: str, config: Optional[AppConfig] = None) -> None:
    app_config = config or get_app_config()
    storage = SQLiteStorage(app_config.storage.database_path)
    service = TokenMetricsService(SolanaRpcDataSource(app_config.rpc), storage, app_config)
    metrics = service.update(mint)
    payload = asdict(metrics)
    payload["pools"] = [pool.to_dict() for pool in metrics.pools]
    print(json.dumps(payload, indent=2, default=str))


def run_cleanup(config: Optional[AppConfig] = None) -> None:
    app_config = config or get_app_config()
    storage = SQLiteStorage(app_config.storage.database_path)
    removed = storage.cleanup_volume(timedelta(hours=app_config.storage.volume_retention_hours))
    logger.info("Removed %d expired volume rows", removed)


def main() -> None:
    parser = argparse.ArgumentParser(description="Index bonding-curve and pool trades on Solana")
    parser.add_argument("--signature", help="Transaction signature to process.")
    parser.add_argument("--program", help="Program id that emitted the transaction.")
    parser.add_argument("--slot", type=int, default=None, help="Slot of the transaction, if known.")
    parser.add_argument("--metrics", metavar="MINT", help="Print reconciled metrics for a mint.")
    parser.add_argument(
        "--cleanup-volume",
        action="store_true",
        help="Delete recorded volume older than the configured retention window.",
    )
    parser.add_argument(
        "--print-metrics",
        action="store_true",
        help="Dump internal counters in Prometheus text format before exiting.",
    )
    args = parser.parse_args()

    config = get_app_config()
    bootstrap_observability(config)
    if args.signature:
        if not args.program:
            parser.error("--program is required with --signature")
        run_signature(args.signature, args.program, args.slot, config)
    if args.metrics:
        run_metrics(args.metrics, config)
    if args.cleanup_volume:
        run_cleanup(config)
    if not (args.signature or args.metrics or args.cleanup_volume):
        parser.print_help()
    if args.print_metrics:
        print(METRICS.export_prometheus())


if __name__ == "__main__":
    main()
