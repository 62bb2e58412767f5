"""
Daily quota gate for AdEarn.

Holds the latest quota snapshot from the ledger and decides whether a new
ad may be selected. The ledger is the source of truth and re-checks the
quota when a claim arrives; this gate only stops the user from starting
an ad that cannot pay out.
"""

import logging
import threading
from typing import Any, Optional

from core.errors import LedgerTransportError
from sync.ledger_client import DailyQuota

logger = logging.getLogger(__name__)


class QuotaLimiter:
    """
    Local cache of the user's daily ad allowance.

    sync_with_ledger() refreshes it from the backend. record_completion()
    applies an accepted claim locally until the next refresh.
    """

    def __init__(self, quota: Optional[DailyQuota] = None, ledger: Any = None,
                 user_id: str = "") -> None:
        """
        Args:
            quota: Initial snapshot (e.g. from the catalog response).
            ledger: Optional ledger client with fetch_daily_quota(user_id).
            user_id: User the quota belongs to.
        """
        self._quota = quota
        self._ledger = ledger
        self.user_id = user_id
        self._lock = threading.Lock()

    @property
    def quota(self) -> Optional[DailyQuota]:
        with self._lock:
            return self._quota

    def set_quota(self, quota: DailyQuota) -> None:
        with self._lock:
            self._quota = quota
        logger.debug(f"Quota snapshot set: {quota}")

    def sync_with_ledger(self) -> bool:
        """
        Fetch a fresh snapshot from the ledger.

        Returns:
            True if the snapshot was updated, False if offline/error.
        """
        if not self._ledger:
            logger.debug("No ledger client, using cached quota only")
            return False
        try:
            quota = self._ledger.fetch_daily_quota(self.user_id)
        except LedgerTransportError as e:
            logger.warning(f"Could not refresh daily quota, keeping cached snapshot: {e}")
            return False
        self.set_quota(quota)
        logger.info(
            f"Daily quota: {quota.ads_watched_today}/{quota.daily_limit} watched, "
            f"{quota.ads_remaining} remaining"
        )
        return True

    def is_exhausted(self) -> bool:
        """
        Whether today's allowance is used up.

        Without a snapshot the gate stays open; the ledger rejects the
        claim if the quota was in fact exhausted.
        """
        with self._lock:
            return self._quota is not None and self._quota.ads_remaining <= 0

    def get_remaining(self) -> Optional[int]:
        with self._lock:
            return self._quota.ads_remaining if self._quota else None

    def record_completion(self) -> None:
        """Apply one accepted claim to the cached snapshot."""
        with self._lock:
            if self._quota is None:
                return
            self._quota = DailyQuota(
                ads_watched_today=self._quota.ads_watched_today + 1,
                ads_remaining=max(0, self._quota.ads_remaining - 1),
                daily_limit=self._quota.daily_limit,
            )

    def get_status_summary(self) -> str:
        """Human-readable summary for the CLI and logs."""
        quota = self.quota
        if quota is None:
            return "Daily quota unknown"
        return (
            f"Ads today: {quota.ads_watched_today}/{quota.daily_limit} "
            f"({quota.ads_remaining} remaining)"
        )
