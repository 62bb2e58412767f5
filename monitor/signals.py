"""
Engagement signal sources.

A signal source reports raw environment changes (visibility, focus,
fullscreen, pointer position) to subscribers and answers point-in-time
focus/visibility queries for the periodic audit. The monitor only depends
on the EngagementSignalSource protocol, so tests feed synthetic signals.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

import config

logger = logging.getLogger(__name__)


# Raw signal names emitted by sources
SIGNAL_VISIBILITY_HIDDEN = "visibility_hidden"
SIGNAL_WINDOW_BLUR = "window_blur"
SIGNAL_FULLSCREEN_EXIT = "fullscreen_exit"
SIGNAL_POINTER_LEAVE = "pointer_leave"

# Each raw signal maps to exactly one disengagement kind
SIGNAL_TO_KIND: Dict[str, str] = {
    SIGNAL_VISIBILITY_HIDDEN: config.EVENT_TAB_HIDDEN,
    SIGNAL_WINDOW_BLUR: config.EVENT_WINDOW_BLUR,
    SIGNAL_FULLSCREEN_EXIT: config.EVENT_FULLSCREEN_EXIT,
    SIGNAL_POINTER_LEAVE: config.EVENT_POINTER_LEAVE,
}


@dataclass(frozen=True)
class DisengagementEvent:
    """A single observed disengagement. Transient, consumed once."""

    kind: str
    timestamp: datetime = field(default_factory=datetime.now)
    audit: bool = False  # True when raised by the periodic audit

    def __post_init__(self):
        if self.kind not in config.DISENGAGEMENT_KINDS:
            raise ValueError(f"Unknown disengagement kind: {self.kind}")


SignalHandler = Callable[[str, dict], None]


class EngagementSignalSource(Protocol):
    """Capability the engagement monitor depends on."""

    def subscribe(self, handler: SignalHandler) -> None:
        """Deliver raw signals as handler(signal_name, details)."""
        ...

    def unsubscribe(self, handler: SignalHandler) -> None:
        ...

    def has_focus(self) -> bool:
        ...

    def is_visible(self) -> bool:
        ...

    def request_fullscreen(self) -> bool:
        """Try to enter fullscreen. Returns True on success."""
        ...

    def exit_fullscreen(self) -> None:
        ...


def signal_to_event(signal: str, details: Optional[dict] = None,
                    timestamp: Optional[datetime] = None) -> Optional[DisengagementEvent]:
    """
    Convert a raw signal into a DisengagementEvent.

    Blur while the document still reports focus is not a disengagement
    (focus moved inside the page). Pointer-leave only counts when the
    player container is fully inside the viewport, otherwise the pointer
    simply left a partially scrolled element.

    Args:
        signal: Raw signal name.
        details: Optional signal details from the source.
        timestamp: Observation time. Defaults to now.

    Returns:
        DisengagementEvent, or None if the signal does not qualify.
    """
    details = details or {}
    kind = SIGNAL_TO_KIND.get(signal)
    if kind is None:
        logger.debug(f"Ignoring unknown signal: {signal}")
        return None

    if signal == SIGNAL_WINDOW_BLUR and details.get("document_has_focus"):
        return None
    if signal == SIGNAL_POINTER_LEAVE and not details.get("container_in_viewport", True):
        return None

    return DisengagementEvent(kind=kind, timestamp=timestamp or datetime.now())


class SyntheticSignalSource:
    """
    In-process signal source driven by explicit calls.

    Used by tests and by the terminal watch mode, where keyboard input
    stands in for browser events.
    """

    def __init__(self, fullscreen_available: bool = True):
        self._handlers: List[SignalHandler] = []
        self._lock = threading.Lock()
        self.fullscreen_available = fullscreen_available
        self.fullscreen = False
        self.focused = True
        self.visible = True

    def subscribe(self, handler: SignalHandler) -> None:
        with self._lock:
            if handler not in self._handlers:
                self._handlers.append(handler)

    def unsubscribe(self, handler: SignalHandler) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def has_focus(self) -> bool:
        return self.focused

    def is_visible(self) -> bool:
        return self.visible

    def request_fullscreen(self) -> bool:
        self.fullscreen = self.fullscreen_available
        return self.fullscreen

    def exit_fullscreen(self) -> None:
        self.fullscreen = False

    def emit(self, signal: str, **details) -> None:
        """Deliver a raw signal to every subscriber."""
        if signal == SIGNAL_VISIBILITY_HIDDEN:
            self.visible = False
        elif signal == SIGNAL_WINDOW_BLUR and not details.get("document_has_focus"):
            self.focused = False
        elif signal == SIGNAL_FULLSCREEN_EXIT:
            self.fullscreen = False

        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler(signal, details)

    def restore(self) -> None:
        """Return to a focused, visible state (fullscreen untouched)."""
        self.focused = True
        self.visible = True
