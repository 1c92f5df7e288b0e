import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Dict, List

from examguard.models.schemas import Signal, SignalSource, ViolationKind

logger = logging.getLogger(__name__)


class EnvironmentEvent(str, Enum):
    HIDDEN = "hidden"
    VISIBLE = "visible"
    BLUR = "blur"
    FOCUS = "focus"


class EnvironmentEventSource:
    """
    Visibility and focus transitions of the exam window, as reported by the client.
    Repeated reports of the current state are not transitions and emit nothing.
    """

    def __init__(self):
        self.visible = True
        self.focused = True
        self._listeners: Dict[EnvironmentEvent, List[Callable[[], None]]] = defaultdict(list)

    def subscribe(self, event: EnvironmentEvent, handler: Callable[[], None]):
        self._listeners[event].append(handler)

    def unsubscribe(self, event: EnvironmentEvent, handler: Callable[[], None]):
        handlers = self._listeners.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self) -> int:
        return sum(len(handlers) for handlers in self._listeners.values())

    def report(self, event: EnvironmentEvent) -> bool:
        """Feed one observed state. Returns True if it was a transition."""
        event = EnvironmentEvent(event)
        if event in (EnvironmentEvent.HIDDEN, EnvironmentEvent.VISIBLE):
            visible = event is EnvironmentEvent.VISIBLE
            if visible == self.visible:
                return False
            self.visible = visible
        else:
            focused = event is EnvironmentEvent.FOCUS
            if focused == self.focused:
                return False
            self.focused = focused

        for handler in list(self._listeners.get(event, [])):
            handler()
        return True


class FocusMonitor:
    """Turns transitions away from the exam window into violation signals."""

    def __init__(self, source: EnvironmentEventSource, on_signal: Callable[[Signal], None]):
        self.source = source
        self.on_signal = on_signal
        self.active = False
        self._handlers = {
            EnvironmentEvent.HIDDEN: self._handle_hidden,
            EnvironmentEvent.BLUR: self._handle_blur,
            EnvironmentEvent.VISIBLE: self._handle_visible,
            EnvironmentEvent.FOCUS: self._handle_focus,
        }

    def attach(self):
        if self.active:
            return
        for event, handler in self._handlers.items():
            self.source.subscribe(event, handler)
        self.active = True

    def detach(self):
        if not self.active:
            return
        for event, handler in self._handlers.items():
            self.source.unsubscribe(event, handler)
        self.active = False

    def _handle_hidden(self):
        self.on_signal(Signal(
            kind=ViolationKind.TAB_SWITCH,
            detail="User switched tabs or minimized the window",
            source=SignalSource.ENVIRONMENT,
        ))

    def _handle_blur(self):
        self.on_signal(Signal(
            kind=ViolationKind.APP_BLUR,
            detail="User switched to another application",
            source=SignalSource.ENVIRONMENT,
        ))

    def _handle_visible(self):
        logger.info("Exam window visible again")

    def _handle_focus(self):
        logger.info("User returned to the exam")
