#!/usr/bin/env python3
"""
AdEarn - Main Entry Point

Terminal front end for the ad-watch engine: lists the ads available today
and runs a watch session. In the terminal, keyboard input stands in for
the browser's disengagement signals.

Usage:
    python main.py --list               # Show today's ads and quota
    python main.py --watch AD_ID        # Watch an ad
"""

import sys
import logging
import threading
import argparse
from typing import List, Optional

import config
from core.engine import AdWatchEngine
from core.errors import AdWatchError, LedgerTransportError
from monitor.signals import (
    SIGNAL_FULLSCREEN_EXIT,
    SIGNAL_POINTER_LEAVE,
    SIGNAL_VISIBILITY_HIDDEN,
    SIGNAL_WINDOW_BLUR,
    SyntheticSignalSource,
)
from sync.ledger_client import AdCatalogEntry, AdEarnLedger
from tracking.analytics import (
    format_duration,
    format_progress_bar,
    format_reward,
    summarize_daily_stats,
)
from tracking.daily_stats import DailyStatsTracker
from tracking.quota_limiter import QuotaLimiter

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format=config.LOG_FORMAT
)
logger = logging.getLogger(__name__)

# Suppress noisy third-party library logs (HTTP requests, etc.)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

# Keyboard keys mapped to the signals they simulate
KEY_SIGNALS = {
    "h": SIGNAL_VISIBILITY_HIDDEN,
    "b": SIGNAL_WINDOW_BLUR,
    "f": SIGNAL_FULLSCREEN_EXIT,
    "p": SIGNAL_POINTER_LEAVE,
}


class AdEarnCLI:
    """
    Terminal application wrapping one AdWatchEngine.
    """

    def __init__(self, ledger: AdEarnLedger, user_id: str):
        self.ledger = ledger
        self.user_id = user_id
        self.source = SyntheticSignalSource()
        self.quota = QuotaLimiter(ledger=ledger, user_id=user_id)
        self.daily_stats = DailyStatsTracker()
        self.engine = AdWatchEngine(
            user_id=user_id,
            ledger=ledger,
            signal_source=self.source,
            quota_limiter=self.quota,
            daily_stats=self.daily_stats,
        )
        self._done = threading.Event()

        self.engine.on_tick = self._on_tick
        self.engine.on_warning = self._on_warning
        self.engine.on_completed = self._on_completed
        self.engine.on_aborted = self._on_aborted
        self.engine.on_error = self._on_error

    def list_ads(self) -> List[AdCatalogEntry]:
        """Print today's quota and eligible ads."""
        self.quota.sync_with_ledger()
        ads = self.ledger.fetch_catalog(self.user_id)

        print("\n" + "=" * 60)
        print("📺 Ads available today")
        print("=" * 60)
        print(self.quota.get_status_summary())
        print(summarize_daily_stats(self.daily_stats.get_daily_stats()))
        print()
        if not ads:
            print("No ads left today. Come back tomorrow!")
        for ad in ads:
            reward = format_reward(ad.reward_amount) if ad.reward_amount is not None else "?"
            print(f"  {ad.id:<12} {ad.title[:30]:<30} {format_duration(ad.duration_seconds):>14}  {reward}")
        print("=" * 60)
        return ads

    def watch(self, ad_id: str) -> bool:
        """
        Run a watch session for one ad.

        Returns:
            True if the ad was credited.
        """
        self.quota.sync_with_ledger()
        ads = {ad.id: ad for ad in self.ledger.fetch_catalog(self.user_id)}
        ad = ads.get(ad_id)
        if ad is None:
            print(f"❌ Ad {ad_id} is not available today.")
            return False

        try:
            self.engine.select_ad(ad)
        except AdWatchError as e:
            print(f"❌ {e}")
            return False

        print("\n" + "=" * 60)
        print(f"🎬 {ad.title}")
        print(f"Watch {format_duration(ad.duration_seconds)} to earn {format_reward(ad.reward_amount)}")
        print("Anti-cheat system active: do not switch tabs, minimize, or leave fullscreen.")
        print("Keys: h=hide tab  b=blur  f=exit fullscreen  p=pointer leave  q=quit")
        print("=" * 60)
        input("Press Enter to start watching in fullscreen...")

        try:
            self.engine.request_lock()
        except AdWatchError as e:
            print(f"❌ {e}")
            self.engine.reset()
            return False

        listener = threading.Thread(target=self._keyboard_listener, daemon=True)
        listener.start()

        try:
            while not self._done.wait(0.2):
                pass
        except KeyboardInterrupt:
            self.engine.cancel()
            self._done.wait(config.CLAIM_TIMEOUT_SECONDS)

        credited = self.engine.phase == config.PHASE_COMPLETED
        self.engine.cleanup()
        self.engine.reset()
        return credited

    def _keyboard_listener(self) -> None:
        """Translate keyboard lines into simulated signals."""
        while not self._done.is_set():
            try:
                key = input().strip().lower()
            except (EOFError, OSError):
                return
            if self._done.is_set():
                return
            if key == "q":
                self.engine.cancel()
            elif key in KEY_SIGNALS:
                self.source.emit(KEY_SIGNALS[key], document_has_focus=False, container_in_viewport=True)
                self.source.restore()
            elif key:
                print("Unknown key. Use h, b, f, p or q.")

    # ------------------------------------------------------------------
    # Engine callbacks
    # ------------------------------------------------------------------

    def _on_tick(self, remaining: int) -> None:
        status = self.engine.get_status()
        bar = format_progress_bar(status["progress_percent"])
        print(f"\r{bar} {remaining:>3}s remaining ", end="", flush=True)

    def _on_warning(self, strikes: int, event) -> None:
        print(f"\n⚠️  Warning: please focus on the ad ({event.kind}, strike {strikes})")

    def _on_completed(self, reward: float, outcome) -> None:
        print(f"\n🎉 Ad completed! You earned {format_reward(reward)}")
        print(summarize_daily_stats(self.daily_stats.get_daily_stats()))
        self._done.set()

    def _on_aborted(self, reason: str, error: Optional[AdWatchError]) -> None:
        message = str(error) if error else config.OUTCOME_MESSAGES.get(reason, reason)
        print(f"\n❌ {message}")
        if reason == config.ABORT_CHEAT_DETECTED:
            print("Select the ad again to restart it from the beginning.")
        self._done.set()

    def _on_error(self, error_type: str, message: str) -> None:
        print(f"\n❌ {error_type}: {message}")


def main():
    """
    Main entry point: parses arguments and runs the requested command.
    """
    parser = argparse.ArgumentParser(
        description="AdEarn - watch ads, earn rewards",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --list            Show today's ads
  python main.py --watch AD_ID     Watch an ad
        """
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="List ads available today")
    group.add_argument("--watch", metavar="AD_ID", help="Watch the given ad")
    parser.add_argument("--user-id", default="", help="User id (defaults to the signed-in user)")

    args = parser.parse_args()

    ledger = AdEarnLedger()
    if not ledger.is_available():
        print("\n❌ Supabase is not configured. Set SUPABASE_URL and SUPABASE_ANON_KEY in your .env file.")
        sys.exit(1)

    user_id = args.user_id or ledger.get_user_id()
    if not user_id:
        print("\n❌ Not signed in. Pass --user-id or sign in first.")
        sys.exit(1)

    app = AdEarnCLI(ledger, user_id)
    try:
        if args.list:
            app.list_ads()
        else:
            credited = app.watch(args.watch)
            sys.exit(0 if credited else 2)
    except KeyboardInterrupt:
        print("\n\nGoodbye!")
        sys.exit(0)
    except LedgerTransportError as e:
        logger.error(f"Ledger unavailable: {e}")
        print(f"\n❌ Could not reach the server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
