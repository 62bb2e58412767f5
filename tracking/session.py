"""Ad-watch session state and disengagement logging."""

import logging
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Any

import config

logger = logging.getLogger(__name__)


class AdSession:
    """
    State of a single ad-watch attempt.

    Created when an ad is selected and discarded once the outcome has
    been shown. Nothing here is persisted; the ledger is the system of record.
    The engine owns the phase field and changes it only under its own lock.
    """

    def __init__(self, ad_id: str, duration_seconds: int, reward_amount: float,
                 session_nonce: Optional[str] = None):
        """
        Initialize a session for the selected ad.

        Args:
            ad_id: Identifier of the advertisement being watched.
            duration_seconds: Required watch duration (already validated).
            reward_amount: Amount the server declared for this ad.
            session_nonce: Optional fixed nonce. If None, a fresh one is generated.
        """
        self.ad_id = ad_id
        self.duration_seconds = int(duration_seconds)
        self._reward_amount = float(reward_amount)
        self.session_nonce = session_nonce or self._generate_nonce()

        self.phase: str = config.PHASE_ARMED
        self.remaining_seconds: int = self.duration_seconds
        self.strike_count: int = 0

        self.armed_at: datetime = datetime.now()
        self.engaged_at: Optional[datetime] = None
        self.ended_at: Optional[datetime] = None

        self.abort_reason: Optional[str] = None
        self.error: Optional[Exception] = None
        self.earned_amount: float = 0.0

        self.events: List[Dict[str, Any]] = []
        self._lock = threading.Lock()  # Thread safety for event logging

    @staticmethod
    def _generate_nonce() -> str:
        """Generate an unguessable, never-reused session nonce."""
        return uuid.uuid4().hex

    @property
    def reward_amount(self) -> float:
        """Reward declared by the server (read-only once the session exists)."""
        return self._reward_amount

    @property
    def is_terminal(self) -> bool:
        return self.phase in config.TERMINAL_PHASES

    @property
    def watched_seconds(self) -> int:
        return self.duration_seconds - self.remaining_seconds

    def progress_percent(self) -> float:
        """Share of the ad watched so far, 0-100."""
        return (self.watched_seconds / self.duration_seconds) * 100

    def log_disengagement(self, kind: str, timestamp: datetime, strike_number: int) -> None:
        """
        Record a disengagement that counted as a strike (thread-safe).

        Args:
            kind: DisengagementEvent kind.
            timestamp: When the signal was observed.
            strike_number: Strike count after this event was applied.
        """
        if kind not in config.DISENGAGEMENT_KINDS:
            logger.warning(f"Unknown disengagement kind: {kind}")

        with self._lock:
            self.events.append({
                "kind": kind,
                "timestamp": timestamp.isoformat(),
                "strike": strike_number,
                "remaining_seconds": self.remaining_seconds,
            })

    def get_events(self) -> List[Dict[str, Any]]:
        """Copy of the disengagement log."""
        with self._lock:
            return list(self.events)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable snapshot, used for status polling and audit reports."""
        return {
            "ad_id": self.ad_id,
            "session_nonce": self.session_nonce,
            "phase": self.phase,
            "duration_seconds": self.duration_seconds,
            "remaining_seconds": self.remaining_seconds,
            "reward_amount": self.reward_amount,
            "strike_count": self.strike_count,
            "abort_reason": self.abort_reason,
            "earned_amount": self.earned_amount,
            "armed_at": self.armed_at.isoformat(),
            "engaged_at": self.engaged_at.isoformat() if self.engaged_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "events": self.get_events(),
        }
