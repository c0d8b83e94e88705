# flowsniper/journal.py
"""FlowStep journaling for the arbitrage engine."""

import json
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional

from flowsniper.types import FlowOperation, FlowStep, StepStatus
from flowsniper.utils.logger import get_logger

logger = get_logger(__name__)

FlowListener = Callable[[FlowStep], None]


class FlowJournal:
    """
    Append-only audit trail of engine outcomes.

    Every success, skip and failure is recorded as a FlowStep. Entries are
    kept in memory (bounded), optionally appended to a JSON-lines file
    (scan pulses excepted), and pushed to listeners such as the scheduler's
    activity tracker.
    """

    def __init__(self, path: Optional[str] = None, max_entries: int = 1000):
        self.path = Path(path) if path else None
        self._entries: Deque[FlowStep] = deque(maxlen=max_entries)
        self._listeners: List[FlowListener] = []
        self.total_recorded = 0

        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def add_listener(self, listener: FlowListener):
        self._listeners.append(listener)

    def record(self, step: FlowStep) -> FlowStep:
        """Append ``step`` and notify listeners."""
        self._entries.append(step)
        self.total_recorded += 1

        # Pulses stay in memory only
        if self.path and step.operation is not FlowOperation.SCAN_PULSE:
            try:
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(step.to_dict()) + "\n")
            except OSError as e:
                logger.error(f"Failed to journal FlowStep {step.id}: {e}")

        icon = "✅" if step.status is StepStatus.SUCCESS else "❌"
        if step.operation is FlowOperation.SCAN_PULSE:
            logger.debug(f"[{step.operation.value}] {step.pair}: {step.detail}")
        else:
            logger.info(
                f"{icon} [{step.operation.value}] {step.pair} | PnL {step.profit:+.4f} | "
                f"{step.tx_hash or '-'}{' | ' + step.detail if step.detail else ''}"
            )

        for listener in self._listeners:
            try:
                listener(step)
            except Exception as e:
                logger.error(f"FlowStep listener failed: {e}")

        return step

    def recent(self, limit: int = 50) -> List[FlowStep]:
        """Most recent entries, newest last."""
        if limit <= 0:
            return []
        return list(self._entries)[-limit:]

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for step in self._entries:
            key = f"{step.operation.value}:{step.status.value}"
            counts[key] = counts.get(key, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._entries)
