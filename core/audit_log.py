"""
perpguard Core: Audit Logger

Structured JSONL trail of every engine cycle for debugging and analysis.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger shared by all engines.

    Logs every cycle including:
    - Status and skip/halt reason
    - Account state and circuit breaker outcome
    - Reconciliation outcome
    - Forced closes
    - Decision summary and tool calls

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        self.audit_file = Path(audit_file or "logs/cycles.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_cycle(self, result: Any) -> None:
        """Append one CycleResult. Write failures are logged, never raised."""
        entry = {
            "timestamp": result.started_at.isoformat(),
            "engine_id": result.engine_id,
            "iteration": result.iteration,
            "status": result.status,
            "reason": result.reason,
            "duration_seconds": round(result.duration_seconds, 3),
            "symbols": result.symbols,
            "account": result.account,
            "breaker": result.breaker,
            "reconcile": result.reconcile,
            "forced_closes": [self._serialize_execution(r) for r in result.forced_closes],
            "decision": result.decision_text[:1000] if result.decision_text else None,
            "actions": result.actions_taken,
            "error": result.error,
        }

        try:
            with self._lock, open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
            logger.debug(f"Audited cycle: engine={result.engine_id} status={result.status}")
        except OSError as e:
            logger.error(f"Failed to write audit log: {e}")

    @staticmethod
    def _serialize_execution(execution: Any) -> Dict[str, Any]:
        if hasattr(execution, "to_dict"):
            return execution.to_dict()
        if isinstance(execution, dict):
            return execution
        return {"raw": str(execution)}

    def get_recent_cycles(self, n: int = 10, engine_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent cycle logs (most recent first), optionally for one engine.
        """
        if not self.audit_file.exists():
            return []

        with open(self.audit_file, "r", encoding="utf-8") as f:
            lines = f.readlines()

        cycles = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if engine_id is not None and entry.get("engine_id") != engine_id:
                continue
            cycles.append(entry)
            if len(cycles) >= n:
                break
        return cycles
