"""Command-line interface for fee insights."""

import sys
import json
import signal
import argparse
import threading
from .alerts import AlertManager
from .config import Config
from .engine import FeeInsightsEngine
from .errors import ConfigError, ProviderError
from .horizon import HorizonFeeDataProvider
from .logging import setup_logging, get_logger
from .storage import FeeStore

logger = get_logger(__name__)


def build_engine(config: Config) -> FeeInsightsEngine:
    """Wire provider, store and alerts from configuration."""
    provider = HorizonFeeDataProvider(
        config.horizon_url,
        timeout_secs=config.horizon_timeout_secs,
        batch_size=config.horizon_batch_size,
        max_pages=config.horizon_max_pages,
    )

    store = None
    storage_cfg = config.storage_config
    if storage_cfg["enabled"]:
        store = FeeStore(
            backend=storage_cfg["backend"],
            db_path=storage_cfg["db_path"],
            jsonl_dir=storage_cfg["jsonl_dir"],
        )

    alert_manager = AlertManager(config.alert_webhook_url, config.alert_min_change_secs)
    return FeeInsightsEngine(provider, config.insights_config, store=store, alert_manager=alert_manager)


def _print_json(payload, verbose: bool):
    if verbose:
        print(json.dumps(payload, indent=2))
    else:
        print(json.dumps(payload))


def main():
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="Track network fee statistics from Horizon, detect congestion "
                    "and record periodic fee snapshots."
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: search for config.yaml)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one cycle, print the snapshot and status, then exit (cron-friendly)"
    )
    parser.add_argument(
        "--check-provider",
        action="store_true",
        help="Run the provider health check, print its metadata, then exit"
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Pretty-print JSON output"
    )

    args = parser.parse_args()

    try:
        config = Config(args.config)
    except (FileNotFoundError, ConfigError) as e:
        import logging
        logging.basicConfig(level=logging.ERROR, format='[%(levelname)s] %(message)s')
        logger.error(f"Error loading config: {e}")
        sys.exit(1)

    setup_logging(config)

    try:
        engine = build_engine(config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if args.check_provider:
        try:
            engine.provider.health_check()
            healthy, error = True, None
        except ProviderError as e:
            healthy, error = False, str(e)
        _print_json({
            "provider": engine.provider.provider_name(),
            "healthy": healthy,
            "error": error,
            "metadata": engine.provider_metadata().to_dict(),
        }, args.verbose)
        sys.exit(0 if healthy else 2)

    if args.once:
        result = engine.run_cycle()
        snapshot = engine.current_snapshot()
        _print_json({
            "ok": result.ok,
            "points_ingested": result.points_ingested,
            "snapshot": snapshot.to_dict() if snapshot else None,
            "status": engine.status().to_dict(),
        }, args.verbose)
        if engine.store is not None:
            engine.store.close()
        sys.exit(0 if result.ok else 1)

    # Continuous mode
    stop_requested = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop_requested.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    engine.start()
    while not stop_requested.is_set() and engine.is_running():
        stop_requested.wait(1.0)

    clean = engine.stop()
    if engine.store is not None and clean:
        engine.store.close()
    logger.info("Exiting.")
    sys.exit(0 if clean else 1)


if __name__ == "__main__":
    main()
