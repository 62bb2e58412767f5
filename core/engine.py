"""
AdWatchEngine - session controller for rewarded ad viewing.

Owns the lifecycle of one ad-watch attempt:

    idle -> armed -> engaged -> completing -> completed
                  \\         \\
                   +---------+-> aborted

This module has ZERO UI dependencies. A front end (browser bridge, CLI)
calls engine methods and receives updates via callbacks.

Callbacks:
    on_phase_change(phase: str, session: AdSession)
    on_tick(remaining_seconds: int)
    on_warning(strike_count: int, event: DisengagementEvent)
    on_completed(reward_amount: float, outcome: ClaimOutcome)
    on_aborted(reason: str, error: Optional[AdWatchError])
    on_error(error_type: str, message: str)

Every transition happens under one lock and is guarded by the current
phase, so a late tick, signal or claim response cannot move a session
that has already advanced.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import config
from core.errors import (
    AdWatchError,
    ClaimRejected,
    ClaimTransportFailure,
    DailyLimitReached,
    InvalidAdSelection,
    LockAcquisitionFailure,
    PolicyAbort,
)
from monitor.engagement import (
    DECISION_ABORT,
    DECISION_CONTINUE,
    DECISION_WARN,
    EngagementMonitor,
    EngagementPolicy,
)
from monitor.signals import DisengagementEvent, EngagementSignalSource
from sync.ledger_client import AdCatalogEntry, ClaimOutcome, CompletionClaim
from sync.reconciler import CompletionReconciler
from tracking.daily_stats import DailyStatsTracker
from tracking.quota_limiter import QuotaLimiter
from tracking.session import AdSession

logger = logging.getLogger(__name__)


def run_in_thread(func: Callable[[], None]) -> None:
    """Default dispatcher: run work on a daemon thread."""
    threading.Thread(target=func, daemon=True).start()


def run_inline(func: Callable[[], None]) -> None:
    """Dispatcher that runs work immediately on the caller's thread."""
    func()


def validate_ad(ad: AdCatalogEntry,
                min_duration: int = config.MIN_AD_DURATION_SECONDS,
                max_duration: int = config.MAX_AD_DURATION_SECONDS) -> None:
    """
    Check a catalog entry before arming.

    Raises:
        InvalidAdSelection: Missing id, non-positive or out-of-range
            duration, or missing/negative reward.
    """
    if not ad.id:
        raise InvalidAdSelection("Ad has no id.")
    if ad.duration_seconds is None or ad.duration_seconds <= 0:
        raise InvalidAdSelection(
            f"Ad {ad.id} has an invalid duration ({ad.duration_seconds}s).", reason="invalid_duration"
        )
    if not min_duration <= ad.duration_seconds <= max_duration:
        raise InvalidAdSelection(
            f"Ad {ad.id} duration {ad.duration_seconds}s is outside "
            f"{min_duration}-{max_duration}s.", reason="duration_out_of_range"
        )
    if ad.reward_amount is None or ad.reward_amount < 0:
        raise InvalidAdSelection(f"Ad {ad.id} has no valid reward.", reason="invalid_reward")


class AdWatchEngine:
    """
    Core ad-watch session controller.

    Handles:
    - Ad selection and validation against the daily quota
    - Fullscreen lock acquisition
    - Countdown (background ticker thread, or external tick() calls)
    - Disengagement policy (strikes, abort)
    - Completion claim hand-off and outcome reporting
    - Cheat-attempt audit reporting

    All collaborators are passed in; the engine never reads global state.
    """

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def __init__(
        self,
        user_id: str,
        ledger: Any,
        signal_source: EngagementSignalSource,
        quota_limiter: Optional[QuotaLimiter] = None,
        daily_stats: Optional[DailyStatsTracker] = None,
        monitor: Optional[EngagementMonitor] = None,
        reconciler: Optional[CompletionReconciler] = None,
        policy: Optional[EngagementPolicy] = None,
        dispatch: Callable[[Callable[[], None]], None] = run_in_thread,
        run_ticker: bool = True,
        tick_interval: float = config.TICK_INTERVAL_SECONDS,
        min_duration: int = config.MIN_AD_DURATION_SECONDS,
        max_duration: int = config.MAX_AD_DURATION_SECONDS,
    ) -> None:
        """
        Args:
            user_id: The viewer; included in every claim.
            ledger: Ledger collaborator (submit_completion, report_cheat_attempt).
            signal_source: Fullscreen and engagement signal capability.
            quota_limiter: Daily quota gate. Defaults to one backed by the ledger.
            daily_stats: Optional local earnings tally.
            monitor: Engagement monitor. Defaults to one on signal_source.
            reconciler: Claim reconciler. Defaults to one on ledger.
            policy: Strike/audit tuning for the default monitor.
            dispatch: Runs claim submission and cheat reports off the caller's thread.
            run_ticker: Start a background ticker on lock. Disable to drive tick() manually.
            tick_interval: Seconds between ticks.
            min_duration: Shortest accepted ad duration.
            max_duration: Longest accepted ad duration.
        """
        self.user_id = user_id
        self.ledger = ledger
        self.signal_source = signal_source
        self.quota_limiter = quota_limiter or QuotaLimiter(ledger=ledger, user_id=user_id)
        self.daily_stats = daily_stats
        self.monitor = monitor or EngagementMonitor(signal_source, policy)
        self.reconciler = reconciler or CompletionReconciler(ledger)
        self.min_duration = min_duration
        self.max_duration = max_duration
        self.tick_interval = tick_interval
        # Longest request_lock() waits for a previous session's watchers to stop
        self.watcher_shutdown_timeout = 5.0

        self.session: Optional[AdSession] = None
        self._lock = threading.RLock()
        self._dispatch = dispatch
        self._run_ticker = run_ticker
        self._ticker_stop = threading.Event()
        self._ticker_thread: Optional[threading.Thread] = None
        # Session the ticker and monitor currently run for
        self._watched_session: Optional[AdSession] = None
        # Set while no ticker/monitor is running or still shutting down
        self._watchers_idle = threading.Event()
        self._watchers_idle.set()

        # ---- Callbacks (set by the presentation layer) ----
        self.on_phase_change: Optional[Callable[[str, AdSession], None]] = None
        self.on_tick: Optional[Callable[[int], None]] = None
        self.on_warning: Optional[Callable[[int, DisengagementEvent], None]] = None
        self.on_completed: Optional[Callable[[float, ClaimOutcome], None]] = None
        self.on_aborted: Optional[Callable[[str, Optional[AdWatchError]], None]] = None
        self.on_error: Optional[Callable[[str, str], None]] = None

    @property
    def phase(self) -> str:
        with self._lock:
            return self.session.phase if self.session else config.PHASE_IDLE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def select_ad(self, ad: AdCatalogEntry) -> AdSession:
        """
        Arm a new session for the given ad.

        A finished (completed or aborted) session is discarded first, so
        re-selecting an aborted ad always restarts from full duration with
        a fresh nonce.

        Returns:
            The new AdSession, in the armed phase.

        Raises:
            InvalidAdSelection: Bad catalog entry, ad already credited today,
                or a session already in progress.
            DailyLimitReached: The quota snapshot shows nothing remaining.
        """
        with self._lock:
            previous = self.session
            if previous and not previous.is_terminal:
                raise InvalidAdSelection(
                    f"A session is already {previous.phase}.", reason="session_in_progress"
                )

            validate_ad(ad, self.min_duration, self.max_duration)

            if self.quota_limiter.is_exhausted():
                raise DailyLimitReached(
                    config.REJECTION_MESSAGES["quota_exhausted"], reason="quota_exhausted"
                )
            if self.daily_stats and self.daily_stats.has_completed(ad.id):
                raise InvalidAdSelection(
                    config.REJECTION_MESSAGES["already_watched_today"], reason="already_watched_today"
                )

            self.session = AdSession(ad.id, ad.duration_seconds, ad.reward_amount)
            session = self.session

        if previous:
            self.reconciler.forget(previous.session_nonce)

        logger.info(f"Ad {ad.id} armed ({ad.duration_seconds}s, reward {ad.reward_amount})")
        self._notify_phase_change(session)
        return session

    def request_lock(self) -> None:
        """
        Acquire fullscreen and start the countdown.

        On failure the session stays armed and the call may be retried.
        Calling it while already engaged does nothing.

        Raises:
            LockAcquisitionFailure: Fullscreen was refused, or no ad is armed.
        """
        with self._lock:
            session = self.session
            if session and session.phase == config.PHASE_ENGAGED:
                return
            if not session or session.phase != config.PHASE_ARMED:
                raise LockAcquisitionFailure("No ad is armed.", reason="not_armed")

        # The previous session's ticker and monitor may still be stopping.
        # Waits outside the lock: their shutdown needs it.
        self._watchers_idle.wait(self.watcher_shutdown_timeout)

        with self._lock:
            if self.session is not session or session.phase != config.PHASE_ARMED:
                raise LockAcquisitionFailure("No ad is armed.", reason="not_armed")
            if not self._watchers_idle.is_set():
                raise LockAcquisitionFailure(
                    "The previous ad is still closing. Please try again.", reason="watchers_busy"
                )

            try:
                acquired = bool(self.signal_source.request_fullscreen())
            except Exception as e:
                logger.warning(f"Fullscreen request raised: {e}")
                acquired = False

            if not acquired:
                logger.info(f"Fullscreen refused for ad {session.ad_id}; still armed")
                raise LockAcquisitionFailure(
                    "Fullscreen is required to watch this ad. Please allow fullscreen and try again.",
                    reason="fullscreen_denied",
                )

            session.phase = config.PHASE_ENGAGED
            session.engaged_at = datetime.now()
            self._watched_session = session
            self._watchers_idle.clear()
            self.monitor.start(lambda event: self._apply_disengagement(event, session))
            if self._run_ticker:
                self._start_ticker(session)

        logger.info(f"Ad {session.ad_id} engaged; countdown started")
        self._notify_phase_change(session)

    def tick(self) -> None:
        """
        Advance the countdown by one second.

        No-op unless engaged. Reaching zero moves the session to
        completing and hands the claim to the reconciler.
        """
        self._tick(None)

    def _tick(self, expected: Optional[AdSession]) -> None:
        """Countdown step. With `expected` set, only that session may advance."""
        claim = None
        with self._lock:
            session = self.session
            if expected is not None and session is not expected:
                return
            if not session or session.phase != config.PHASE_ENGAGED:
                return

            session.remaining_seconds = max(0, session.remaining_seconds - 1)
            remaining = session.remaining_seconds

            if remaining == 0:
                session.phase = config.PHASE_COMPLETING
                claim = CompletionClaim(
                    ad_id=session.ad_id,
                    session_nonce=session.session_nonce,
                    user_id=self.user_id,
                    claimed_duration_seconds=session.duration_seconds,
                )

        self._safe_callback(self.on_tick, remaining)

        if claim is not None:
            self._halt_watchers(session)
            logger.info(f"Ad {session.ad_id} countdown finished; claiming reward")
            self._notify_phase_change(session)
            self._dispatch(lambda: self._reconcile(session, claim))

    def report_disengagement(self, event: DisengagementEvent) -> str:
        """
        Apply the strike policy to a disengagement event.

        Events outside the engaged phase are ignored: nothing is counted
        once a claim is in flight or the session has ended.

        Returns:
            The policy decision: "continue", "warn" or "abort".
        """
        return self._apply_disengagement(event, None)

    def _apply_disengagement(self, event: DisengagementEvent,
                             expected: Optional[AdSession]) -> str:
        """Strike policy step. With `expected` set, events for other sessions are dropped."""
        with self._lock:
            session = self.session
            if expected is not None and session is not expected:
                logger.debug(f"Ignoring {event.kind} from a previous session")
                return DECISION_CONTINUE
            if not session or session.phase != config.PHASE_ENGAGED:
                logger.debug(f"Ignoring {event.kind} in phase {self.phase}")
                return DECISION_CONTINUE

            decision = self.monitor.evaluate(event, session.strike_count)
            session.strike_count = decision.strike_count
            session.log_disengagement(event.kind, event.timestamp, decision.strike_count)

            if decision.action == DECISION_ABORT:
                error = PolicyAbort(
                    config.OUTCOME_MESSAGES[config.ABORT_CHEAT_DETECTED], reason=event.kind
                )
                self._abort_locked(session, config.ABORT_CHEAT_DETECTED, error)

        if decision.action == DECISION_WARN:
            logger.warning(
                f"Disengagement on ad {session.ad_id}: {event.kind} "
                f"(strike {decision.strike_count}/{self.monitor.policy.strike_threshold})"
            )
            self._safe_callback(self.on_warning, decision.strike_count, event)
        elif decision.action == DECISION_ABORT:
            logger.warning(f"Cheat detected on ad {session.ad_id} after {decision.strike_count} strikes")
            self._finish_abort(session)
            self._dispatch(lambda: self._report_cheat(session))

        return decision.action

    def cancel(self) -> bool:
        """
        User-initiated exit while armed or engaged.

        Stops the countdown synchronously. Calling it again, or in any
        other phase, does nothing.

        Returns:
            True if this call aborted the session.
        """
        with self._lock:
            session = self.session
            if not session or session.phase not in (config.PHASE_ARMED, config.PHASE_ENGAGED):
                return False
            self._abort_locked(session, config.ABORT_USER_CANCELLED, None)

        logger.info(f"Ad {session.ad_id} cancelled by user")
        self._finish_abort(session)
        return True

    def reset(self) -> bool:
        """
        Return to idle so a new ad (or the same one) can be selected.

        Armed or engaged sessions are cancelled first. A session whose
        claim is in flight cannot be reset.

        Returns:
            True if the engine is now idle.
        """
        self.cancel()
        with self._lock:
            previous = self.session
            if previous and previous.phase == config.PHASE_COMPLETING:
                return False
            self.session = None
        if previous:
            self.reconciler.forget(previous.session_nonce)
        return True

    def get_status(self) -> Dict[str, Any]:
        """
        Current engine status (polled by the presentation layer).

        Returns:
            dict with keys: phase, ad_id, remaining_seconds, duration_seconds,
            progress_percent, strike_count, reward_amount, earned_amount,
            abort_reason, message.
        """
        with self._lock:
            session = self.session
            if not session:
                return {
                    "phase": config.PHASE_IDLE,
                    "ad_id": None,
                    "remaining_seconds": 0,
                    "duration_seconds": 0,
                    "progress_percent": 0.0,
                    "strike_count": 0,
                    "reward_amount": 0.0,
                    "earned_amount": 0.0,
                    "abort_reason": None,
                    "message": None,
                }
            message = None
            if session.error is not None:
                message = str(session.error)
            elif session.abort_reason:
                message = config.OUTCOME_MESSAGES.get(session.abort_reason)
            return {
                "phase": session.phase,
                "ad_id": session.ad_id,
                "remaining_seconds": session.remaining_seconds,
                "duration_seconds": session.duration_seconds,
                "progress_percent": session.progress_percent(),
                "strike_count": session.strike_count,
                "reward_amount": session.reward_amount,
                "earned_amount": session.earned_amount,
                "abort_reason": session.abort_reason,
                "message": message,
            }

    def cleanup(self) -> None:
        """Clean up resources. Call before app quit."""
        self.cancel()
        with self._lock:
            watched = self._watched_session
        if watched:
            self._halt_watchers(watched)
        logger.info("Engine cleanup complete")

    # ------------------------------------------------------------------
    # Countdown ticker
    # ------------------------------------------------------------------

    def _start_ticker(self, session: AdSession) -> None:
        """Start a ticker bound to one session. Caller holds the lock."""
        self._ticker_stop = threading.Event()
        self._ticker_thread = threading.Thread(
            target=self._ticker_loop, args=(session, self._ticker_stop), daemon=True
        )
        self._ticker_thread.start()

    def _ticker_loop(self, session: AdSession, stop: threading.Event) -> None:
        """Tick `session` every tick_interval until it leaves engaged."""
        try:
            while not stop.wait(self.tick_interval):
                self._tick(session)
                if session.phase != config.PHASE_ENGAGED:
                    break
        except Exception as e:
            logger.error(f"Ticker error: {e}")
            self._notify_error("ticker_error", str(e))

    def _halt_watchers(self, session: AdSession) -> None:
        """
        Stop the ticker and the engagement monitor running for `session`.

        Does nothing if the watchers already belong to another session.
        request_lock() waits for this to finish before starting new ones.
        """
        with self._lock:
            if self._watched_session is not session:
                return
            stop = self._ticker_stop
            thread = self._ticker_thread

        stop.set()
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self.monitor.stop()

        with self._lock:
            if self._watched_session is session:
                self._watched_session = None
                self._ticker_thread = None
                self._watchers_idle.set()

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _abort_locked(self, session: AdSession, reason: str,
                      error: Optional[AdWatchError]) -> None:
        """Mark the session aborted. Caller holds the lock."""
        session.phase = config.PHASE_ABORTED
        session.abort_reason = reason
        session.error = error
        session.ended_at = datetime.now()
        if self._watched_session is session:
            self._ticker_stop.set()

    def _finish_abort(self, session: AdSession) -> None:
        """Side effects of an abort, run after the lock is released."""
        self._halt_watchers(session)
        self._exit_fullscreen()
        self._notify_phase_change(session)
        self._safe_callback(self.on_aborted, session.abort_reason, session.error)

    def _reconcile(self, session: AdSession, claim: CompletionClaim) -> None:
        """Submit the claim and settle the session (runs via dispatch)."""
        outcome: Optional[ClaimOutcome] = None
        error: Optional[AdWatchError] = None
        try:
            outcome = self.reconciler.reconcile(claim)
        except ClaimRejected as e:
            error = e
        except ClaimTransportFailure as e:
            error = e
        except Exception as e:
            logger.error(f"Unexpected claim error: {e}")
            error = ClaimTransportFailure(
                config.OUTCOME_MESSAGES[config.ABORT_CLAIM_TRANSPORT], reason=str(e)
            )

        with self._lock:
            if session.phase != config.PHASE_COMPLETING:
                return
            if outcome is not None:
                session.phase = config.PHASE_COMPLETED
                session.ended_at = datetime.now()
                if outcome.reward_amount is not None:
                    session.earned_amount = outcome.reward_amount
                else:
                    session.earned_amount = session.reward_amount
            else:
                reason = (config.ABORT_CLAIM_REJECTED if isinstance(error, ClaimRejected)
                          else config.ABORT_CLAIM_TRANSPORT)
                self._abort_locked(session, reason, error)

        self._exit_fullscreen()

        if outcome is not None:
            self._record_completion(session, outcome)
            logger.info(f"Ad {session.ad_id} completed; earned {session.earned_amount}")
            self._notify_phase_change(session)
            self._safe_callback(self.on_completed, session.earned_amount, outcome)
        else:
            logger.info(f"Ad {session.ad_id} not rewarded: {session.abort_reason} ({error})")
            self._notify_phase_change(session)
            self._safe_callback(self.on_aborted, session.abort_reason, session.error)

    def _record_completion(self, session: AdSession, outcome: ClaimOutcome) -> None:
        """Update local quota and daily tally. Failures here never undo a reward."""
        self.quota_limiter.record_completion()
        if self.daily_stats:
            try:
                self.daily_stats.record_completion(
                    session.ad_id, session.earned_amount, outcome.new_stats
                )
            except Exception as e:
                logger.warning(f"Could not update daily stats (non-critical): {e}")

    def _report_cheat(self, session: AdSession) -> None:
        """Fire-and-forget audit report; never affects the abort outcome."""
        try:
            self.ledger.report_cheat_attempt(
                self.user_id, session.ad_id, session.session_nonce, session.get_events()
            )
        except Exception as e:
            logger.warning(f"Cheat report failed (non-critical): {e}")

    def _exit_fullscreen(self) -> None:
        try:
            self.signal_source.exit_fullscreen()
        except Exception as e:
            logger.debug(f"Exit fullscreen failed (non-critical): {e}")

    # ------------------------------------------------------------------
    # Callback helpers
    # ------------------------------------------------------------------

    def _notify_phase_change(self, session: AdSession) -> None:
        self._safe_callback(self.on_phase_change, session.phase, session)

    def _notify_error(self, error_type: str, message: str) -> None:
        self._safe_callback(self.on_error, error_type, message)

    @staticmethod
    def _safe_callback(callback: Optional[Callable], *args) -> None:
        if not callback:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Callback error: {e}")
