"""
perpguard Runner: Main Loop

Process entry point.

Flow:
1. Validate and load config (app.yaml, engines.yaml)
2. Configure logging
3. Seed engines into the ledger
4. Start metrics exporter, alerts and audit trail
5. Restore previously running engines (or start the ones named on the CLI)
6. Wait for SIGINT/SIGTERM, then stop every engine
"""

import logging
import signal
import threading
from pathlib import Path
from typing import List, Optional

from core.audit_log import AuditLogger
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.state_store import EngineRecord, LedgerStore, get_ledger_store
from runner.engine_manager import EngineManager
from tools.config_validator import (
    AppConfig,
    load_app_config,
    load_engine_seeds,
    validate_all_configs,
)

logger = logging.getLogger(__name__)


def configure_logging(config: AppConfig) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper()),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
        handlers=handlers,
    )


def seed_engines(store: LedgerStore, config_dir: str) -> int:
    """Upsert engines.yaml entries. Stored status is kept for existing engines."""
    seeds = load_engine_seeds(config_dir)
    known = {e.id for e in store.list_engines()}
    for seed in seeds:
        store.upsert_engine(EngineRecord(
            id=seed.id,
            name=seed.name,
            description=seed.description,
            api_key=seed.api_key,
            api_secret=seed.api_secret,
            model_name=seed.model_name,
            strategy=seed.strategy,
            risk_params=seed.risk_params.model_dump(),
            status=seed.status,
        ))
        if seed.id not in known:
            logger.info(f"Seeded engine {seed.id} ({seed.name}) status={seed.status}")
    return len(seeds)


class EngineHost:
    """
    Owns the manager for the lifetime of the process.

    Responsibilities:
    - Config validation and loading
    - Shared services (ledger, metrics, alerts, audit)
    - Signal handling and orderly shutdown
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if lines:
                    logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.config = load_app_config(config_dir)
        configure_logging(self.config)

        self.store = get_ledger_store(self.config.database_path)
        seeded = seed_engines(self.store, config_dir)
        logger.info(f"Loaded {seeded} engine seed(s) from {config_dir}")

        monitoring = self.config.monitoring
        self.metrics = MetricsRecorder(enabled=monitoring.metrics_enabled, port=monitoring.metrics_port)
        self.alert_service = AlertService.from_config(monitoring)
        self.audit = AuditLogger(self.config.audit_file)

        self.manager = EngineManager(
            self.store,
            config=self.config,
            metrics=self.metrics,
            alert_service=self.alert_service,
            audit=self.audit,
        )
        self._shutdown = threading.Event()

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - stopping engines after current cycles")
        logger.warning("=" * 80)
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def run_once(self, engine_ids: List[int]) -> None:
        for engine_id in engine_ids or [e.id for e in self.store.list_engines()]:
            result = self.manager.run_once(engine_id)
            status = result.status if result else "fatal"
            logger.info(f"[Engine {engine_id}] single cycle finished: {status}")

    def serve(self, engine_ids: Optional[List[int]] = None) -> None:
        self.metrics.start()
        self.install_signal_handlers()

        if engine_ids:
            for engine_id in engine_ids:
                self.manager.start(engine_id)
        else:
            self.manager.restore()

        if not self.manager.list_running():
            logger.warning("No engines running; waiting for shutdown signal")

        while not self._shutdown.wait(1.0):
            pass

        # Stored status stays "running" so the next process restores these engines
        self.manager.stop_all(wait=True)
        self.store.close()
        logger.info("All engines stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="perpguard multi-engine perpetual futures runner")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--engine", type=int, action="append", dest="engines",
                        help="Engine id to start (repeatable; default: restore running engines)")
    parser.add_argument("--once", action="store_true", help="Run one cycle per engine and exit")

    args = parser.parse_args()

    host = EngineHost(config_dir=args.config_dir)
    if args.once:
        host.run_once(args.engines or [])
    else:
        host.serve(args.engines)


if __name__ == "__main__":
    main()
