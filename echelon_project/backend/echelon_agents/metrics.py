"""
In-process cycle statistics
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import CycleOutcome, CycleResult

logger = logging.getLogger(__name__)

RECENT_CYCLES_KEPT = 100


class CycleStats:
    """Counts cycle outcomes and execution results over the life of the process"""

    def __init__(self):
        self.started_at = datetime.now()
        self.outcomes: Counter = Counter()
        self.metrics = {
            "total_cycles": 0,
            "transactions_confirmed": 0,
            "transactions_failed": 0,
            "total_gas_used": 0,
            "last_error": None,
        }
        self.recent_cycles: List[Dict[str, Any]] = []

    def record(self, result: CycleResult):
        self.metrics["total_cycles"] += 1
        self.outcomes[result.outcome.value] += 1

        if result.record is not None:
            if result.record.success:
                self.metrics["transactions_confirmed"] += 1
            elif result.record.status in ("reverted", "failed"):
                self.metrics["transactions_failed"] += 1
            if result.record.gas_used:
                self.metrics["total_gas_used"] += result.record.gas_used

        if result.outcome == CycleOutcome.ERROR:
            self.metrics["last_error"] = result.reason

        self.recent_cycles.append({
            "cycle": result.cycle_number,
            "outcome": result.outcome.value,
            "reason": result.reason,
            "duration_ms": result.duration_ms,
        })
        if len(self.recent_cycles) > RECENT_CYCLES_KEPT:
            self.recent_cycles = self.recent_cycles[-RECENT_CYCLES_KEPT:]

    def count(self, outcome: CycleOutcome) -> int:
        return self.outcomes[outcome.value]

    @property
    def last_cycle(self) -> Optional[Dict[str, Any]]:
        return self.recent_cycles[-1] if self.recent_cycles else None

    def summary(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self.started_at).total_seconds()
        return {
            **self.metrics,
            "outcomes": dict(self.outcomes),
            "uptime_seconds": int(uptime),
        }
