"""
Tests for alert delivery, metrics tallies, the cycle audit trail and engine seeding.
"""

import json
import threading
from unittest.mock import patch

import yaml

from core.audit_log import AuditLogger
from core.execution import ExecutionResult
from core.trading_cycle import CycleResult
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.state_store import EngineRecord
from runner.main_loop import seed_engines


def webhook_service(**overrides):
    config = AlertConfig(enabled=True, webhook_url="https://hooks.example/alert")
    for key, value in overrides.items():
        setattr(config, key, value)
    return AlertService(config)


class TestAlertService:

    def test_disabled_without_webhook(self):
        service = AlertService(AlertConfig(enabled=True, webhook_url=None))
        assert service.is_enabled() is False
        assert service.notify(AlertSeverity.CRITICAL, "Breaker", "tripped") is False

    def test_posts_json_payload(self):
        service = webhook_service()
        with patch("infra.alerting.urllib.request.urlopen") as urlopen:
            sent = service.notify(AlertSeverity.CRITICAL, "Breaker tripped", "engine 1",
                                  {"engine_id": 1})

        assert sent is True
        request = urlopen.call_args.args[0]
        payload = json.loads(request.data.decode("utf-8"))
        assert payload["text"] == '[CRITICAL] Breaker tripped | engine 1 | context={"engine_id": 1}'

    def test_duplicates_suppressed(self):
        service = webhook_service()
        with patch("infra.alerting.urllib.request.urlopen") as urlopen:
            assert service.notify(AlertSeverity.WARNING, "Reconcile", "skipped") is True
            assert service.notify(AlertSeverity.WARNING, "Reconcile", "skipped") is False
            assert service.notify(AlertSeverity.WARNING, "Reconcile", "skipped again") is True
        assert urlopen.call_count == 2

    def test_below_min_severity_filtered(self):
        service = webhook_service(min_severity=AlertSeverity.CRITICAL)
        with patch("infra.alerting.urllib.request.urlopen") as urlopen:
            assert service.notify(AlertSeverity.WARNING, "Slippage", "3.1%") is False
        urlopen.assert_not_called()

    def test_dry_run_logs_only(self, caplog):
        service = AlertService(AlertConfig(enabled=True, webhook_url=None, dry_run=True))
        with patch("infra.alerting.urllib.request.urlopen") as urlopen, caplog.at_level("INFO"):
            assert service.notify(AlertSeverity.CRITICAL, "Engine error", "401") is True
        urlopen.assert_not_called()
        assert "[ALERT:CRITICAL] Engine error" in caplog.text

    def test_severity_parsing(self):
        assert AlertSeverity.from_string("Critical") is AlertSeverity.CRITICAL
        assert AlertSeverity.from_string("bogus") is AlertSeverity.WARNING
        assert AlertSeverity.from_string("", AlertSeverity.INFO) is AlertSeverity.INFO


class TestMetricsRecorder:

    def test_tallies_survive_concurrent_engines(self, metrics):
        def record(engine_id):
            for _ in range(2000):
                metrics.record_skipped_tick(engine_id)
                metrics.record_forced_close(0, "stop_loss")

        threads = [threading.Thread(target=record, args=(i % 2,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert metrics.count("skipped_tick", 0) == 8000
        assert metrics.count("skipped_tick", 1) == 8000
        assert metrics.count("forced_close", 0) == 16000

    def test_singleton_shares_tallies(self, metrics):
        metrics.record_api_error(1, "timeout")
        assert MetricsRecorder(enabled=False).count("api_error", 1) == 1


class TestAuditLogger:

    def test_cycles_round_trip_newest_first(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit" / "cycles.jsonl"))
        close = ExecutionResult(success=True, order_id="order-1", symbol="BTC", side="long",
                                action="close", filled_size=10, filled_price=99.0, pnl=-1.0)

        audit.log_cycle(CycleResult(engine_id=1, iteration=1, status="completed",
                                    decision_text="HOLD"))
        audit.log_cycle(CycleResult(engine_id=2, iteration=1, status="skipped",
                                    reason="no valid market data"))
        audit.log_cycle(CycleResult(engine_id=1, iteration=2, status="completed",
                                    forced_closes=[close]))

        recent = audit.get_recent_cycles(10, engine_id=1)
        assert [c["iteration"] for c in recent] == [2, 1]
        assert recent[0]["forced_closes"][0]["order_id"] == "order-1"
        assert recent[1]["decision"] == "HOLD"
        assert audit.get_recent_cycles(1)[0]["engine_id"] == 1

    def test_missing_file(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "cycles.jsonl"))
        assert audit.get_recent_cycles() == []

    def test_corrupt_lines_skipped(self, tmp_path):
        path = tmp_path / "cycles.jsonl"
        audit = AuditLogger(str(path))
        audit.log_cycle(CycleResult(engine_id=1, iteration=1, status="completed"))
        with open(path, "a") as f:
            f.write("{truncated\n")
        assert len(audit.get_recent_cycles()) == 1


class TestSeedEngines:

    def test_seeds_new_and_keeps_stored_status(self, store, tmp_path):
        store.set_engine_status(1, "running")
        (tmp_path / "engines.yaml").write_text(yaml.safe_dump({"engines": [
            {"id": 1, "name": "alpha", "status": "stopped"},
            {"id": 3, "name": "gamma", "strategy": "aggressive",
             "risk_params": {"max_positions": 2, "symbols": ["sol_usdt"]}},
        ]}))

        assert seed_engines(store, str(tmp_path)) == 2

        assert store.get_engine(1).status == "running"
        gamma = store.get_engine(3)
        assert isinstance(gamma, EngineRecord)
        assert gamma.strategy == "aggressive"
        assert gamma.risk_params["max_positions"] == 2
        assert gamma.risk_params["symbols"] == ["SOL"]

    def test_no_engines_file(self, store, tmp_path):
        assert seed_engines(store, str(tmp_path)) == 0
