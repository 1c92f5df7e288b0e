import logging
from datetime import datetime
from typing import Callable, List, Optional

from examguard.errors import ViolationLogSealedError
from examguard.models.schemas import Signal, ViolationEvent

logger = logging.getLogger(__name__)

ViolationCallback = Callable[[ViolationEvent], None]


class ViolationAggregator:
    """
    Append-only violation log for one session.
    Every recorded signal becomes its own event, in call order, and the
    registered callback sees it before record() returns.
    """

    def __init__(
        self,
        on_violation: Optional[ViolationCallback] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._on_violation = on_violation
        self._clock = clock
        self._events: List[ViolationEvent] = []
        self.sealed = False

    def register_callback(self, on_violation: Optional[ViolationCallback]):
        self._on_violation = on_violation

    def record(self, signal: Signal) -> ViolationEvent:
        if self.sealed:
            raise ViolationLogSealedError("Violation log is closed")

        event = ViolationEvent(kind=signal.kind, occurred_at=self._clock(), detail=signal.detail)
        self._events.append(event)
        logger.warning("Violation recorded: %s (%s)", event.kind.value, event.detail or "no detail")

        if self._on_violation is not None:
            self._on_violation(event)
        return event

    def snapshot(self) -> List[ViolationEvent]:
        return list(self._events)

    def seal(self):
        self.sealed = True

    def __len__(self) -> int:
        return len(self._events)
