"""
cohort-ttl — CLI entry point for the TTL cleanup engine.

Opens the shared document store, declares governed resources, and runs the
cleanup engine until SIGINT/SIGTERM. Every instance pointed at the same
store takes part in coordinator election; only the coordinator scans.

Usage:
    # Run as a long-lived worker
    python -m cohort_ttl.main --config config/default.yaml

    # One manual cleanup pass (coordinator election disabled for the pass)
    python -m cohort_ttl.main --config config/default.yaml --run-once

    # Fixed worker id (e.g. the pod name)
    python -m cohort_ttl.main --config config/default.yaml --worker-id ttl-0
"""

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from cohort_ttl.config import AppConfig, ConfigurationError, load_config
from cohort_ttl.engine import CleanupEngine
from cohort_ttl.monitor.alert_service import AlertService
from cohort_ttl.store.document_store import DocumentStore


def open_store(config: AppConfig) -> DocumentStore:
    """Open the shared store and declare resources the rules depend on."""
    store = DocumentStore(db_path=config.store.db_path)
    declared = set(config.store.declare_resources)
    for rule in config.rules:
        declared.add(rule.resource)
        if rule.archive_resource:
            declared.add(rule.archive_resource)
    for name in sorted(declared):
        if not store.has_resource(name):
            store.define_resource(name)
    return store


async def _run_engine(config: AppConfig, run_once: bool = False) -> None:
    """Run the engine until interrupted, or for a single pass."""
    store = open_store(config)
    try:
        if run_once:
            config = config.model_copy(
                update={"coordinator": config.coordinator.model_copy(update={"enabled": False})}
            )
        engine = CleanupEngine(config, store)

        if config.alerts.enabled:
            alert_service = AlertService(
                bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
                chat_id=os.getenv("TELEGRAM_CHAT_ID", ""),
                worker_id=engine.worker_id,
                notify_scan_expired=config.alerts.notify_scan_expired,
            )
            alert_service.attach(engine)

        if run_once:
            runs = await engine.run_cleanup()
            for run in runs:
                logger.info(
                    "cohort-ttl: {} pass expired {}/{} records in {:.0f} ms",
                    run.granularity,
                    run.records_expired,
                    run.records_processed,
                    run.duration_ms,
                )
            await engine.stop()
            return

        # ── Signal handlers for graceful shutdown ──────────────────────
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(engine.stop()),
                )
            except NotImplementedError:
                # Windows does not support add_signal_handler for SIGTERM;
                # SIGINT is handled via KeyboardInterrupt fallback below.
                pass

        try:
            await engine.start()
        except KeyboardInterrupt:
            logger.info("cohort-ttl: KeyboardInterrupt received")
        finally:
            if engine.is_running:
                await engine.stop()
            logger.info("cohort-ttl: engine stopped cleanly")
    finally:
        store.close()


def setup_logging(config: AppConfig) -> None:
    """Configure loguru logging from config."""
    log_dir = Path(config.logging.file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        level=config.logging.level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level:8}</level> | {message}",
    )
    logger.add(
        config.logging.file,
        level=config.logging.level,
        rotation=config.logging.rotation,
        retention=config.logging.retention,
        encoding="utf-8",
    )


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="cohort-ttl — TTL record expiration engine")
    parser.add_argument(
        "--config",
        default="config/default.yaml",
        help="Path to engine config YAML",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run one cleanup pass over every rule and exit",
    )
    parser.add_argument(
        "--worker-id",
        default=None,
        help="Worker id used in coordinator election (default: hostname-pid-random)",
    )
    args = parser.parse_args()

    # Load environment variables
    load_dotenv()

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        logger.error("cohort-ttl: {}", e)
        sys.exit(2)
    if args.worker_id:
        config = config.model_copy(update={"worker_id": args.worker_id})
    setup_logging(config)

    logger.info("cohort-ttl v0.1.0 starting")
    logger.info("Config: {}", args.config)
    logger.info("Rules: {}", [rule.resource for rule in config.rules])

    try:
        asyncio.run(_run_engine(config, run_once=args.run_once))
    except ConfigurationError as e:
        logger.error("cohort-ttl: {}", e)
        sys.exit(2)


if __name__ == "__main__":
    main()
