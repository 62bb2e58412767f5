"""
Tests for core/engine.py: verifies the AdWatchEngine state machine
with synthetic signals, a manual audit scheduler and an in-memory ledger.
"""

import sys
import tempfile
import threading
import time
import unittest
import logging
from pathlib import Path
from unittest.mock import MagicMock

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from core.engine import AdWatchEngine, run_inline, validate_ad
from core.errors import (
    ClaimRejected,
    ClaimTransportFailure,
    DailyLimitReached,
    InvalidAdSelection,
    LedgerTransportError,
    LockAcquisitionFailure,
    PolicyAbort,
)
from monitor.engagement import EngagementMonitor, EngagementPolicy
from monitor.signals import (
    DisengagementEvent,
    SIGNAL_FULLSCREEN_EXIT,
    SIGNAL_VISIBILITY_HIDDEN,
    SyntheticSignalSource,
)
from sync.ledger_client import AdCatalogEntry, ClaimOutcome, DailyQuota
from sync.reconciler import CompletionReconciler
from tracking.daily_stats import DailyStatsTracker
from tracking.quota_limiter import QuotaLimiter

logger = logging.getLogger(__name__)


class FakeLedger:
    """In-memory ledger. Scripted results are ClaimOutcome or Exception instances."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.claims = []
        self.cheat_reports = []

    def submit_completion(self, claim):
        self.claims.append(claim)
        result = self.results.pop(0) if self.results else ClaimOutcome(accepted=True)
        if isinstance(result, Exception):
            raise result
        return result

    def report_cheat_attempt(self, user_id, ad_id, session_nonce, events=None):
        self.cheat_reports.append((user_id, ad_id, session_nonce, events))
        return True


class ManualScheduler:
    """Audit scheduler fired explicitly by the test."""

    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self.running = False

    def start(self):
        self.running = True

    def stop(self):
        self.running = False

    def fire(self):
        if self.running:
            self.callback()


def make_engine(ledger=None, source=None, policy=None, rng=None, dispatch=run_inline, **kwargs):
    """Build an engine with deterministic collaborators."""
    ledger = ledger or FakeLedger()
    source = source or SyntheticSignalSource()
    schedulers = []

    def factory(interval, callback):
        scheduler = ManualScheduler(interval, callback)
        schedulers.append(scheduler)
        return scheduler

    monitor = EngagementMonitor(source, policy=policy, rng=rng, scheduler_factory=factory)
    reconciler = CompletionReconciler(ledger, sleep=lambda seconds: None)
    engine = AdWatchEngine(
        "user-1", ledger, source,
        monitor=monitor,
        reconciler=reconciler,
        dispatch=dispatch,
        run_ticker=False,
        **kwargs
    )
    engine.test_schedulers = schedulers
    return engine, ledger, source


def record_phases(engine):
    phases = []
    engine.on_phase_change = lambda phase, session: phases.append(phase)
    return phases


def tick_n(engine, count):
    for _ in range(count):
        engine.tick()


AD_30 = AdCatalogEntry(id="ad-30", title="Thirty", duration_seconds=30, reward_amount=2.5)
AD_45 = AdCatalogEntry(id="ad-45", title="Forty five", duration_seconds=45, reward_amount=2.5)


class TestAdValidation(unittest.TestCase):
    """Test catalog entry validation before arming."""

    def test_zero_duration_rejected(self):
        """Duration 0 raises InvalidAdSelection and the engine stays idle."""
        engine, ledger, _ = make_engine()
        bad = AdCatalogEntry(id="ad-0", duration_seconds=0, reward_amount=1.0)
        with self.assertRaises(InvalidAdSelection):
            engine.select_ad(bad)
        self.assertEqual(engine.phase, config.PHASE_IDLE)
        self.assertIsNone(engine.session)

    def test_missing_reward_rejected(self):
        """An ad without a reward never arms."""
        with self.assertRaises(InvalidAdSelection):
            validate_ad(AdCatalogEntry(id="ad-1", duration_seconds=30, reward_amount=None))

    def test_duration_out_of_range_rejected(self):
        """Durations outside the configured bounds are refused."""
        with self.assertRaises(InvalidAdSelection) as ctx:
            validate_ad(AdCatalogEntry(id="ad-1", duration_seconds=301, reward_amount=1.0), 10, 300)
        self.assertEqual(ctx.exception.reason, "duration_out_of_range")

    def test_valid_ad_arms(self):
        """A valid ad arms with full duration, zero strikes and a nonce."""
        engine, _, _ = make_engine()
        session = engine.select_ad(AD_30)
        self.assertEqual(session.phase, config.PHASE_ARMED)
        self.assertEqual(session.remaining_seconds, 30)
        self.assertEqual(session.strike_count, 0)
        self.assertTrue(session.session_nonce)

    def test_select_while_in_progress_rejected(self):
        """A second selection while armed is refused."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        with self.assertRaises(InvalidAdSelection):
            engine.select_ad(AD_45)
        self.assertEqual(engine.session.ad_id, "ad-30")

    def test_quota_exhausted_blocks_selection(self):
        """No ads remaining today blocks selection before arming."""
        quota = QuotaLimiter(quota=DailyQuota(ads_watched_today=5, ads_remaining=0, daily_limit=5))
        engine, _, _ = make_engine(quota_limiter=quota)
        with self.assertRaises(DailyLimitReached):
            engine.select_ad(AD_30)
        self.assertEqual(engine.phase, config.PHASE_IDLE)

    def test_already_watched_today_blocks_selection(self):
        """An ad credited today (local tally) cannot be selected again."""
        with tempfile.TemporaryDirectory() as tmpdir:
            stats = DailyStatsTracker(Path(tmpdir) / "daily_stats.json")
            stats.record_completion("ad-30", 2.5)
            engine, _, _ = make_engine(daily_stats=stats)
            with self.assertRaises(InvalidAdSelection) as ctx:
                engine.select_ad(AD_30)
            self.assertEqual(ctx.exception.reason, "already_watched_today")


class TestLockAcquisition(unittest.TestCase):
    """Test fullscreen lock handling."""

    def test_lock_failure_stays_armed_and_can_retry(self):
        """A refused fullscreen keeps the session armed; a retry succeeds."""
        source = SyntheticSignalSource(fullscreen_available=False)
        engine, _, _ = make_engine(source=source)
        session = engine.select_ad(AD_30)
        nonce = session.session_nonce

        with self.assertRaises(LockAcquisitionFailure):
            engine.request_lock()
        self.assertEqual(engine.phase, config.PHASE_ARMED)
        self.assertEqual(session.strike_count, 0)

        source.fullscreen_available = True
        engine.request_lock()
        self.assertEqual(engine.phase, config.PHASE_ENGAGED)
        self.assertEqual(engine.session.session_nonce, nonce)

    def test_lock_without_session_raises(self):
        """request_lock() with nothing armed raises."""
        engine, _, _ = make_engine()
        with self.assertRaises(LockAcquisitionFailure):
            engine.request_lock()

    def test_source_exception_is_lock_failure(self):
        """A raising fullscreen API surfaces as LockAcquisitionFailure."""
        source = SyntheticSignalSource()
        source.request_fullscreen = MagicMock(side_effect=RuntimeError("not allowed"))
        engine, _, _ = make_engine(source=source)
        engine.select_ad(AD_30)
        with self.assertRaises(LockAcquisitionFailure):
            engine.request_lock()
        self.assertEqual(engine.phase, config.PHASE_ARMED)

    def test_tick_before_lock_is_noop(self):
        """Ticks while armed do not move the countdown."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        tick_n(engine, 5)
        self.assertEqual(engine.session.remaining_seconds, 30)


class TestCompletion(unittest.TestCase):
    """Test the countdown and claim hand-off."""

    def test_clean_watch_credits_once(self):
        """30 clean ticks produce exactly one claim and a completed session."""
        ledger = FakeLedger([ClaimOutcome(accepted=True, reward_amount=2.5)])
        engine, _, _ = make_engine(ledger=ledger)
        phases = record_phases(engine)
        rewards = []
        engine.on_completed = lambda amount, outcome: rewards.append(amount)

        session = engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 30)

        self.assertEqual(phases, [
            config.PHASE_ARMED,
            config.PHASE_ENGAGED,
            config.PHASE_COMPLETING,
            config.PHASE_COMPLETED,
        ])
        self.assertEqual(len(ledger.claims), 1)
        self.assertEqual(ledger.claims[0].session_nonce, session.session_nonce)
        self.assertEqual(ledger.claims[0].claimed_duration_seconds, 30)
        self.assertEqual(ledger.claims[0].user_id, "user-1")
        self.assertEqual(rewards, [2.5])
        self.assertEqual(engine.get_status()["earned_amount"], 2.5)

    def test_extra_ticks_never_resubmit(self):
        """Ticks after zero never produce a second claim for the nonce."""
        engine, ledger, _ = make_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 40)
        self.assertEqual(len(ledger.claims), 1)
        self.assertEqual(engine.session.remaining_seconds, 0)

    def test_remaining_seconds_non_increasing(self):
        """The countdown only goes down."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        seen = []
        engine.on_tick = seen.append
        tick_n(engine, 30)
        self.assertEqual(seen, list(range(29, -1, -1)))

    def test_reward_falls_back_to_declared_amount(self):
        """An accepted outcome without an amount credits the declared reward."""
        engine, _, _ = make_engine(ledger=FakeLedger([ClaimOutcome(accepted=True)]))
        engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 30)
        self.assertEqual(engine.session.earned_amount, 2.5)

    def test_quota_rejection_aborts_without_reward(self):
        """A rejected claim aborts with a reason distinct from a cheat abort."""
        ledger = FakeLedger([ClaimOutcome(accepted=False, reason="quota_exhausted")])
        engine, _, _ = make_engine(ledger=ledger)
        aborted = []
        engine.on_aborted = lambda reason, error: aborted.append((reason, error))

        engine.select_ad(AD_45)
        engine.request_lock()
        tick_n(engine, 45)

        self.assertEqual(engine.phase, config.PHASE_ABORTED)
        self.assertEqual(engine.session.abort_reason, config.ABORT_CLAIM_REJECTED)
        self.assertNotEqual(engine.session.abort_reason, config.ABORT_CHEAT_DETECTED)
        self.assertIsInstance(engine.session.error, ClaimRejected)
        self.assertEqual(engine.session.error.reason, "quota_exhausted")
        self.assertEqual(engine.session.earned_amount, 0.0)
        self.assertEqual(len(aborted), 1)
        self.assertEqual(aborted[0][0], config.ABORT_CLAIM_REJECTED)

    def test_transport_errors_retried_until_accepted(self):
        """Two transport errors then success: one accepted claim, completed."""
        ledger = FakeLedger([
            LedgerTransportError("timeout"),
            LedgerTransportError("connection reset"),
            ClaimOutcome(accepted=True, reward_amount=2.5),
        ])
        engine, _, _ = make_engine(ledger=ledger)
        session = engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 30)

        self.assertEqual(engine.phase, config.PHASE_COMPLETED)
        self.assertEqual(len(ledger.claims), 3)
        self.assertEqual({c.session_nonce for c in ledger.claims}, {session.session_nonce})
        self.assertEqual(engine.session.earned_amount, 2.5)

    def test_transport_retries_exhausted(self):
        """Exhausted retries abort with a transport failure, not a rejection."""
        ledger = FakeLedger([LedgerTransportError("down")] * 10)
        engine, _, _ = make_engine(ledger=ledger)
        engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 30)

        self.assertEqual(engine.phase, config.PHASE_ABORTED)
        self.assertEqual(engine.session.abort_reason, config.ABORT_CLAIM_TRANSPORT)
        self.assertIsInstance(engine.session.error, ClaimTransportFailure)
        self.assertEqual(len(ledger.claims), config.CLAIM_MAX_RETRIES + 1)

    def test_completion_updates_quota_and_daily_stats(self):
        """An accepted claim is applied to the local quota and tally."""
        with tempfile.TemporaryDirectory() as tmpdir:
            stats = DailyStatsTracker(Path(tmpdir) / "daily_stats.json")
            quota = QuotaLimiter(quota=DailyQuota(ads_watched_today=1, ads_remaining=2, daily_limit=3))
            ledger = FakeLedger([ClaimOutcome(accepted=True, reward_amount=2.5)])
            engine, _, _ = make_engine(ledger=ledger, quota_limiter=quota, daily_stats=stats)

            engine.select_ad(AD_30)
            engine.request_lock()
            tick_n(engine, 30)

            self.assertEqual(quota.get_remaining(), 1)
            self.assertTrue(stats.has_completed("ad-30"))
            self.assertAlmostEqual(stats.get_daily_stats()["earnings"], 2.5)


class TestDisengagementPolicy(unittest.TestCase):
    """Test strike handling and policy aborts."""

    def test_two_fullscreen_exits_abort(self):
        """Two fullscreen exits after 10 ticks abort with two strikes and no claim."""
        engine, ledger, source = make_engine()
        warnings = []
        engine.on_warning = lambda strikes, event: warnings.append(strikes)

        engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 10)

        source.emit(SIGNAL_FULLSCREEN_EXIT)
        self.assertEqual(engine.phase, config.PHASE_ENGAGED)
        self.assertEqual(engine.session.strike_count, 1)
        self.assertEqual(warnings, [1])

        source.emit(SIGNAL_FULLSCREEN_EXIT)
        self.assertEqual(engine.phase, config.PHASE_ABORTED)
        self.assertEqual(engine.session.strike_count, 2)
        self.assertEqual(engine.session.abort_reason, config.ABORT_CHEAT_DETECTED)
        self.assertIsInstance(engine.session.error, PolicyAbort)
        self.assertEqual(len(ledger.claims), 0)

        # Countdown is dead: no claim even if ticks keep coming
        tick_n(engine, 30)
        self.assertEqual(len(ledger.claims), 0)
        self.assertEqual(engine.session.remaining_seconds, 20)

    def test_policy_abort_reports_cheat_attempt(self):
        """A policy abort sends one audit report with the strike log."""
        engine, ledger, _ = make_engine()
        session = engine.select_ad(AD_30)
        engine.request_lock()
        engine.report_disengagement(DisengagementEvent(config.EVENT_TAB_HIDDEN))
        engine.report_disengagement(DisengagementEvent(config.EVENT_WINDOW_BLUR))

        self.assertEqual(len(ledger.cheat_reports), 1)
        user_id, ad_id, nonce, events = ledger.cheat_reports[0]
        self.assertEqual((user_id, ad_id, nonce), ("user-1", "ad-30", session.session_nonce))
        self.assertEqual([e["kind"] for e in events], [config.EVENT_TAB_HIDDEN, config.EVENT_WINDOW_BLUR])

    def test_cheat_report_failure_does_not_change_outcome(self):
        """A failing audit report never alters the abort."""
        ledger = FakeLedger()
        ledger.report_cheat_attempt = MagicMock(side_effect=RuntimeError("offline"))
        engine, _, _ = make_engine(ledger=ledger)
        engine.select_ad(AD_30)
        engine.request_lock()
        engine.report_disengagement(DisengagementEvent(config.EVENT_TAB_HIDDEN))
        action = engine.report_disengagement(DisengagementEvent(config.EVENT_TAB_HIDDEN))

        self.assertEqual(action, "abort")
        self.assertEqual(engine.phase, config.PHASE_ABORTED)
        self.assertEqual(engine.session.abort_reason, config.ABORT_CHEAT_DETECTED)

    def test_strikes_monotonic_until_threshold(self):
        """Strikes only grow while engaged and the threshold always aborts."""
        engine, _, _ = make_engine(policy=EngagementPolicy(strike_threshold=3))
        engine.select_ad(AD_30)
        engine.request_lock()

        counts = []
        actions = []
        for _ in range(3):
            actions.append(engine.report_disengagement(DisengagementEvent(config.EVENT_POINTER_LEAVE)))
            counts.append(engine.session.strike_count)
            engine.tick()

        self.assertEqual(counts, [1, 2, 3])
        self.assertEqual(actions, ["warn", "warn", "abort"])
        self.assertEqual(engine.phase, config.PHASE_ABORTED)

    def test_audit_counts_as_strike(self):
        """A positive periodic audit adds a strike like any other event."""
        source = SyntheticSignalSource()
        engine, _, _ = make_engine(
            source=source, policy=EngagementPolicy(audit_probability=1.0)
        )
        engine.select_ad(AD_30)
        engine.request_lock()
        scheduler = engine.test_schedulers[-1]

        scheduler.fire()
        self.assertEqual(engine.session.strike_count, 0)  # focused and visible

        source.visible = False
        scheduler.fire()
        self.assertEqual(engine.session.strike_count, 1)
        self.assertEqual(engine.session.get_events()[0]["kind"], config.EVENT_TAB_HIDDEN)

    def test_restart_after_abort_uses_fresh_nonce(self):
        """Re-selecting after an abort restarts from full duration with a new nonce."""
        engine, _, source = make_engine()
        first = engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 12)
        source.emit(SIGNAL_VISIBILITY_HIDDEN)
        source.emit(SIGNAL_VISIBILITY_HIDDEN)
        self.assertEqual(engine.phase, config.PHASE_ABORTED)

        second = engine.select_ad(AD_30)
        self.assertNotEqual(first.session_nonce, second.session_nonce)
        self.assertEqual(second.remaining_seconds, 30)
        self.assertEqual(second.strike_count, 0)

    def test_monitor_unsubscribed_after_abort(self):
        """The signal source has no subscribers once the session ends."""
        engine, _, source = make_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        self.assertEqual(source.subscriber_count, 1)
        engine.cancel()
        self.assertEqual(source.subscriber_count, 0)
        self.assertFalse(source.fullscreen)


class TestIgnoreAfterTerminal(unittest.TestCase):
    """Late events never touch a session that has moved on."""

    def test_events_ignored_while_completing(self):
        """Events during an in-flight claim change neither strikes nor phase."""
        pending = []
        engine, ledger, _ = make_engine(dispatch=pending.append)
        engine.select_ad(AD_30)
        engine.request_lock()
        engine.report_disengagement(DisengagementEvent(config.EVENT_WINDOW_BLUR))
        tick_n(engine, 30)
        self.assertEqual(engine.phase, config.PHASE_COMPLETING)

        action = engine.report_disengagement(DisengagementEvent(config.EVENT_FULLSCREEN_EXIT))
        self.assertEqual(action, "continue")
        self.assertEqual(engine.session.strike_count, 1)
        self.assertEqual(engine.phase, config.PHASE_COMPLETING)

        # Not cancelable once the claim is in flight
        self.assertFalse(engine.cancel())
        self.assertFalse(engine.reset())

        for work in pending:
            work()
        self.assertEqual(engine.phase, config.PHASE_COMPLETED)
        self.assertEqual(len(ledger.claims), 1)

    def test_fullscreen_exit_after_completed_ignored(self):
        """A fullscreen exit after completion is not a late penalty."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 30)
        self.assertEqual(engine.phase, config.PHASE_COMPLETED)

        engine.report_disengagement(DisengagementEvent(config.EVENT_FULLSCREEN_EXIT))
        self.assertEqual(engine.phase, config.PHASE_COMPLETED)
        self.assertEqual(engine.session.strike_count, 0)

    def test_events_ignored_after_abort(self):
        """Further events on an aborted session are ignored."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        engine.cancel()
        engine.report_disengagement(DisengagementEvent(config.EVENT_FULLSCREEN_EXIT))
        self.assertEqual(engine.session.strike_count, 0)
        self.assertEqual(engine.session.abort_reason, config.ABORT_USER_CANCELLED)


class TestCancel(unittest.TestCase):
    """Test user cancellation."""

    def test_cancel_twice_is_idempotent(self):
        """First cancel aborts, second is a no-op without duplicate callbacks."""
        engine, ledger, _ = make_engine()
        aborted = []
        engine.on_aborted = lambda reason, error: aborted.append(reason)
        engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 5)

        self.assertTrue(engine.cancel())
        self.assertEqual(engine.phase, config.PHASE_ABORTED)
        self.assertFalse(engine.cancel())
        self.assertEqual(engine.phase, config.PHASE_ABORTED)
        self.assertEqual(aborted, [config.ABORT_USER_CANCELLED])
        self.assertEqual(len(ledger.claims), 0)
        self.assertEqual(len(ledger.cheat_reports), 0)

    def test_cancel_while_armed(self):
        """Cancelling before the lock aborts the armed session."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        self.assertTrue(engine.cancel())
        self.assertEqual(engine.phase, config.PHASE_ABORTED)

    def test_cancel_when_idle_is_noop(self):
        """Cancelling with no session does nothing."""
        engine, _, _ = make_engine()
        self.assertFalse(engine.cancel())
        self.assertEqual(engine.phase, config.PHASE_IDLE)

    def test_reset_returns_to_idle(self):
        """reset() cancels an engaged session and clears it."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        self.assertTrue(engine.reset())
        self.assertEqual(engine.phase, config.PHASE_IDLE)
        self.assertEqual(engine.get_status()["phase"], config.PHASE_IDLE)


class TestCallbacksAndStatus(unittest.TestCase):
    """Test UI notification surface."""

    def test_callback_exception_does_not_break_engine(self):
        """A raising UI callback is logged and the session continues."""
        engine, ledger, _ = make_engine()
        engine.on_tick = MagicMock(side_effect=ValueError("render failed"))
        engine.on_phase_change = MagicMock(side_effect=ValueError("render failed"))
        engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 30)
        self.assertEqual(engine.phase, config.PHASE_COMPLETED)
        self.assertEqual(len(ledger.claims), 1)

    def test_status_snapshot(self):
        """get_status() reports countdown progress and strikes."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 15)
        engine.report_disengagement(DisengagementEvent(config.EVENT_WINDOW_BLUR))

        status = engine.get_status()
        self.assertEqual(status["phase"], config.PHASE_ENGAGED)
        self.assertEqual(status["remaining_seconds"], 15)
        self.assertAlmostEqual(status["progress_percent"], 50.0)
        self.assertEqual(status["strike_count"], 1)
        self.assertIsNone(status["abort_reason"])

    def test_status_message_after_cheat_abort(self):
        """The status message explains a cheat abort."""
        engine, _, _ = make_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        engine.report_disengagement(DisengagementEvent(config.EVENT_TAB_HIDDEN))
        engine.report_disengagement(DisengagementEvent(config.EVENT_TAB_HIDDEN))
        status = engine.get_status()
        self.assertEqual(status["abort_reason"], config.ABORT_CHEAT_DETECTED)
        self.assertEqual(status["message"], config.OUTCOME_MESSAGES[config.ABORT_CHEAT_DETECTED])


class SlowStopMonitor(EngagementMonitor):
    """Monitor whose first stop() blocks until the test releases it."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.stop_entered = threading.Event()
        self.release = threading.Event()
        self._blocked_once = False

    def stop(self):
        if self.is_active and not self._blocked_once:
            self._blocked_once = True
            self.stop_entered.set()
            self.release.wait(5.0)
        super().stop()


class TestRestartDuringShutdown(unittest.TestCase):
    """A new session is never left unwatched by the previous one's shutdown."""

    def make_slow_engine(self, ledger=None, run_ticker=False, tick_interval=1.0):
        ledger = ledger or FakeLedger()
        source = SyntheticSignalSource()
        monitor = SlowStopMonitor(source, scheduler_factory=ManualScheduler)
        engine = AdWatchEngine(
            "user-1", ledger, source,
            monitor=monitor,
            reconciler=CompletionReconciler(ledger, sleep=lambda seconds: None),
            dispatch=run_inline,
            run_ticker=run_ticker,
            tick_interval=tick_interval,
        )
        self.addCleanup(monitor.release.set)
        self.addCleanup(engine.cleanup)
        return engine, source, monitor

    def cancel_in_background(self, engine, monitor):
        """Cancel on another thread and return once it is stuck stopping the monitor."""
        canceller = threading.Thread(target=engine.cancel, daemon=True)
        canceller.start()
        self.assertTrue(monitor.stop_entered.wait(2.0))
        return canceller

    def test_lock_waits_for_previous_shutdown(self):
        """Re-selecting and locking while the old monitor is stopping yields a watched session."""
        engine, source, monitor = self.make_slow_engine()
        engine.select_ad(AD_30)
        engine.request_lock()
        canceller = self.cancel_in_background(engine, monitor)
        self.assertEqual(engine.phase, config.PHASE_ABORTED)

        second = engine.select_ad(AD_45)
        locker = threading.Thread(target=engine.request_lock, daemon=True)
        locker.start()
        time.sleep(0.1)
        # Still waiting on the old shutdown
        self.assertEqual(second.phase, config.PHASE_ARMED)

        monitor.release.set()
        canceller.join(2.0)
        locker.join(2.0)
        self.assertFalse(locker.is_alive())

        self.assertEqual(second.phase, config.PHASE_ENGAGED)
        self.assertTrue(monitor.is_active)
        self.assertEqual(source.subscriber_count, 1)

        engine.tick()
        self.assertEqual(second.remaining_seconds, 44)

        source.emit(SIGNAL_VISIBILITY_HIDDEN)
        source.emit(SIGNAL_VISIBILITY_HIDDEN)
        self.assertEqual(second.phase, config.PHASE_ABORTED)
        self.assertEqual(second.abort_reason, config.ABORT_CHEAT_DETECTED)
        self.assertEqual(second.strike_count, 2)

    def test_lock_refused_while_shutdown_stalls(self):
        """If the old watchers do not stop in time the lock fails and the ad stays armed."""
        engine, source, monitor = self.make_slow_engine()
        engine.watcher_shutdown_timeout = 0.05
        engine.select_ad(AD_30)
        engine.request_lock()
        canceller = self.cancel_in_background(engine, monitor)

        second = engine.select_ad(AD_45)
        with self.assertRaises(LockAcquisitionFailure) as ctx:
            engine.request_lock()
        self.assertEqual(ctx.exception.reason, "watchers_busy")
        self.assertEqual(second.phase, config.PHASE_ARMED)

        monitor.release.set()
        canceller.join(2.0)
        engine.request_lock()
        self.assertEqual(second.phase, config.PHASE_ENGAGED)
        self.assertEqual(source.subscriber_count, 1)

    def test_new_ticker_runs_after_previous_shutdown(self):
        """The countdown of the new session keeps moving after the old one is torn down."""
        engine, source, monitor = self.make_slow_engine(run_ticker=True, tick_interval=0.01)
        engine.select_ad(AdCatalogEntry(id="first", duration_seconds=300, reward_amount=1.0))
        engine.request_lock()
        canceller = self.cancel_in_background(engine, monitor)

        second = engine.select_ad(AdCatalogEntry(id="second", duration_seconds=300, reward_amount=1.0))
        locker = threading.Thread(target=engine.request_lock, daemon=True)
        locker.start()
        time.sleep(0.05)
        monitor.release.set()
        canceller.join(2.0)
        locker.join(2.0)

        deadline = time.monotonic() + 2.0
        while second.remaining_seconds == 300 and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertLess(second.remaining_seconds, 300)
        self.assertEqual(second.phase, config.PHASE_ENGAGED)
        self.assertTrue(monitor.is_active)

    def test_reselect_forgets_previous_nonce(self):
        """The settled claim of a discarded session is dropped from the reconciler."""
        engine, ledger, _ = make_engine()
        first = engine.select_ad(AD_30)
        engine.request_lock()
        tick_n(engine, 30)
        self.assertIsNotNone(engine.reconciler.settled_result(first.session_nonce))

        engine.select_ad(AD_45)
        self.assertIsNone(engine.reconciler.settled_result(first.session_nonce))

    def test_slow_ledger_aborts_at_claim_ceiling(self):
        """A claim still pending at the ceiling aborts with a transport failure."""
        release = threading.Event()
        self.addCleanup(release.set)

        class HangingLedger(FakeLedger):
            def submit_completion(self, claim):
                self.claims.append(claim)
                release.wait(5.0)
                return ClaimOutcome(accepted=True)

        ledger = HangingLedger()
        source = SyntheticSignalSource()
        engine = AdWatchEngine(
            "user-1", ledger, source,
            monitor=EngagementMonitor(source, scheduler_factory=ManualScheduler),
            reconciler=CompletionReconciler(ledger, timeout=0.2, sleep=lambda seconds: None),
            dispatch=run_inline,
            run_ticker=False,
        )
        session = engine.select_ad(AD_30)
        engine.request_lock()

        started = time.monotonic()
        tick_n(engine, 30)
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertEqual(session.phase, config.PHASE_ABORTED)
        self.assertEqual(session.abort_reason, config.ABORT_CLAIM_TRANSPORT)
        self.assertIsInstance(session.error, ClaimTransportFailure)
        self.assertEqual(session.earned_amount, 0.0)


class TestBackgroundTicker(unittest.TestCase):
    """Test the real ticker thread end to end."""

    def test_ticker_completes_session(self):
        """The background ticker drives a short ad to completion."""
        ledger = FakeLedger([ClaimOutcome(accepted=True, reward_amount=1.0)])
        source = SyntheticSignalSource()
        done = threading.Event()
        monitor = EngagementMonitor(source, scheduler_factory=ManualScheduler)
        engine = AdWatchEngine(
            "user-1", ledger, source,
            monitor=monitor,
            reconciler=CompletionReconciler(ledger, sleep=lambda seconds: None),
            dispatch=run_inline,
            tick_interval=0.01,
        )
        engine.on_completed = lambda amount, outcome: done.set()

        engine.select_ad(AdCatalogEntry(id="short", duration_seconds=10, reward_amount=1.0))
        engine.request_lock()

        self.assertTrue(done.wait(5.0))
        self.assertEqual(engine.phase, config.PHASE_COMPLETED)
        self.assertEqual(len(ledger.claims), 1)
        engine.cleanup()

    def test_cancel_stops_ticker(self):
        """After cancel the countdown never moves again."""
        ledger = FakeLedger()
        source = SyntheticSignalSource()
        monitor = EngagementMonitor(source, scheduler_factory=ManualScheduler)
        engine = AdWatchEngine(
            "user-1", ledger, source,
            monitor=monitor,
            dispatch=run_inline,
            tick_interval=0.01,
        )
        engine.select_ad(AdCatalogEntry(id="long", duration_seconds=300, reward_amount=1.0))
        engine.request_lock()
        engine.cancel()
        remaining = engine.session.remaining_seconds

        time.sleep(0.1)
        self.assertEqual(engine.session.remaining_seconds, remaining)
        self.assertEqual(len(ledger.claims), 0)


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    unittest.main()
