"""
Engagement monitor: turns environment signals into policy decisions.

The monitor subscribes to an EngagementSignalSource, converts raw signals
into DisengagementEvents and forwards them to the engine. It also owns the
strike escalation rule and the randomized periodic audit that catches
suppressed browser events.
"""

import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional

import config
from monitor.signals import (
    DisengagementEvent,
    EngagementSignalSource,
    signal_to_event,
)

logger = logging.getLogger(__name__)

DECISION_CONTINUE = "continue"
DECISION_WARN = "warn"
DECISION_ABORT = "abort"


@dataclass
class EngagementPolicy:
    """Tuning constants for the strike rule and the periodic audit."""

    strike_threshold: int = config.STRIKE_THRESHOLD
    audit_interval_seconds: float = config.AUDIT_INTERVAL_SECONDS
    audit_probability: float = config.AUDIT_PROBABILITY

    def __post_init__(self):
        if self.strike_threshold < 1:
            raise ValueError("strike_threshold must be at least 1")
        if self.audit_interval_seconds <= 0:
            raise ValueError("audit_interval_seconds must be positive")
        if not 0.0 <= self.audit_probability <= 1.0:
            raise ValueError("audit_probability must be between 0 and 1")


class PolicyDecision(NamedTuple):
    action: str
    strike_count: int


class AuditScheduler:
    """
    Calls a callback every `interval` seconds on a daemon thread.

    stop() is synchronous from any thread other than the scheduler's own:
    after it returns the callback will not run again.
    """

    def __init__(self, interval: float, callback: Callable[[], None]):
        self.interval = interval
        self.callback = callback
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.callback()
            except Exception as e:
                logger.error(f"Engagement audit error: {e}")


class EngagementMonitor:
    """
    Watches a signal source while an ad is playing.

    The engine calls start() when the countdown begins and stop() as soon
    as the session leaves the engaged phase. Qualifying events go to the
    handler passed to start(); the engine then asks evaluate() for the
    policy decision.
    """

    def __init__(
        self,
        source: EngagementSignalSource,
        policy: Optional[EngagementPolicy] = None,
        rng: Optional[random.Random] = None,
        scheduler_factory: Optional[Callable[[float, Callable[[], None]], AuditScheduler]] = None,
    ) -> None:
        """
        Args:
            source: Signal source capability (browser bridge, synthetic source).
            policy: Strike and audit tuning. Defaults come from config.
            rng: Random generator for the audit draw (seed it in tests).
            scheduler_factory: Builds the audit scheduler from
                (interval, callback). Defaults to AuditScheduler.
        """
        self.source = source
        self.policy = policy or EngagementPolicy()
        self._rng = rng or random.Random()
        self._scheduler_factory = scheduler_factory or AuditScheduler
        self._scheduler: Optional[AuditScheduler] = None
        self._handler: Optional[Callable[[DisengagementEvent], None]] = None
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self, handler: Callable[[DisengagementEvent], None]) -> None:
        """Subscribe to the source and start the periodic audit."""
        if self._active:
            return
        self._handler = handler
        self._active = True
        self.source.subscribe(self._on_signal)
        self._scheduler = self._scheduler_factory(
            self.policy.audit_interval_seconds, self.run_audit
        )
        self._scheduler.start()
        logger.debug("Engagement monitor started")

    def stop(self) -> None:
        """Unsubscribe and stop the audit. Safe to call repeatedly."""
        if not self._active:
            return
        self._active = False
        self.source.unsubscribe(self._on_signal)
        if self._scheduler:
            self._scheduler.stop()
            self._scheduler = None
        self._handler = None
        logger.debug("Engagement monitor stopped")

    def evaluate(self, event: Optional[DisengagementEvent], strike_count: int) -> PolicyDecision:
        """
        Apply the strike rule to one event.

        Every qualifying event adds a strike. Strikes never decay within a
        session; reaching the threshold aborts.

        Args:
            event: The disengagement event, or None for no event.
            strike_count: Strikes accumulated so far in this session.

        Returns:
            PolicyDecision with the action and the new strike count.
        """
        if event is None:
            return PolicyDecision(DECISION_CONTINUE, strike_count)

        new_count = strike_count + 1
        if new_count >= self.policy.strike_threshold:
            return PolicyDecision(DECISION_ABORT, new_count)
        return PolicyDecision(DECISION_WARN, new_count)

    def run_audit(self) -> Optional[DisengagementEvent]:
        """
        Randomized spot check of focus and visibility.

        Fires even when no browser event arrived, so a suppressed
        visibilitychange or blur is still caught.

        Returns:
            The event delivered to the handler, or None.
        """
        if not self._active:
            return None
        if self._rng.random() >= self.policy.audit_probability:
            return None

        if not self.source.is_visible():
            kind = config.EVENT_TAB_HIDDEN
        elif not self.source.has_focus():
            kind = config.EVENT_WINDOW_BLUR
        else:
            return None

        logger.info(f"Periodic audit found disengagement: {kind}")
        event = DisengagementEvent(kind=kind, audit=True)
        self._deliver(event)
        return event

    def _on_signal(self, signal: str, details: dict) -> None:
        """Signal source callback."""
        if not self._active:
            return
        event = signal_to_event(signal, details)
        if event is not None:
            self._deliver(event)

    def _deliver(self, event: DisengagementEvent) -> None:
        handler = self._handler
        if handler:
            handler(event)
