"""
AdEarnLedger - Supabase client for the earnings ledger.

Handles:
- Ad catalog lookup (ads eligible today for a user)
- Daily quota snapshot
- Completion claim submission (idempotent on the session nonce)
- Cheat-attempt audit reports (fire-and-forget)

The ledger is the source of truth for rewards. It checks the daily quota
and per-ad-per-day uniqueness itself; claims from this client are advisory.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import config
from core.errors import LedgerTransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdCatalogEntry:
    """An ad offered to the user today."""

    id: str
    title: str = ""
    duration_seconds: int = 0
    reward_amount: Optional[float] = None
    video_url: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AdCatalogEntry":
        """Build an entry from an `ads` row. Missing values stay empty for validation later."""
        reward = row.get("earnings", row.get("reward_amount"))
        duration = row.get("duration", row.get("duration_seconds")) or 0
        return cls(
            id=str(row.get("id", "")),
            title=row.get("title") or "",
            duration_seconds=int(duration),
            reward_amount=float(reward) if reward is not None else None,
            video_url=row.get("video_url") or "",
        )


@dataclass(frozen=True)
class DailyQuota:
    """Snapshot of today's ad allowance."""

    ads_watched_today: int
    ads_remaining: int
    daily_limit: int

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DailyQuota":
        limit = int(row.get("daily_limit", 0))
        watched = int(row.get("ads_watched_today", 0))
        remaining = row.get("ads_remaining")
        if remaining is None:
            remaining = limit - watched
        return cls(
            ads_watched_today=watched,
            ads_remaining=max(0, int(remaining)),
            daily_limit=limit,
        )


@dataclass(frozen=True)
class CompletionClaim:
    """Assertion that a watch session finished. Sent once per session nonce."""

    ad_id: str
    session_nonce: str
    user_id: str
    claimed_duration_seconds: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "p_ad_id": self.ad_id,
            "p_session_nonce": self.session_nonce,
            "p_user_id": self.user_id,
            "p_claimed_duration": self.claimed_duration_seconds,
        }


@dataclass(frozen=True)
class ClaimOutcome:
    """The ledger's authoritative answer to a claim."""

    accepted: bool
    reward_amount: Optional[float] = None
    reason: Optional[str] = None
    new_stats: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "ClaimOutcome":
        reward = data.get("reward_amount", data.get("earnings"))
        return cls(
            accepted=bool(data.get("accepted", False)),
            reward_amount=float(reward) if reward is not None else None,
            reason=data.get("reason"),
            new_stats=data.get("new_stats") or {},
        )


class AdEarnLedger:
    """
    Supabase client wrapper for the AdEarn ledger.

    Works against the `ads` and `ad_view_logs` tables and the
    `get_daily_quota` / `submit_ad_completion` database functions.
    """

    def __init__(self, supabase_url: str = "", supabase_key: str = "", client: Any = None) -> None:
        """
        Initialise the ledger client.

        Args:
            supabase_url: Supabase project URL (falls back to config).
            supabase_key: Supabase anon/public key (falls back to config).
            client: Pre-built Supabase client (skips creation).
        """
        self._url = supabase_url or config.SUPABASE_URL
        self._key = supabase_key or config.SUPABASE_ANON_KEY
        self._client = client
        if self._client is None:
            self._init_client()

    # ------------------------------------------------------------------
    # Client initialisation
    # ------------------------------------------------------------------

    def _init_client(self) -> None:
        """Create the Supabase client if credentials are available."""
        if not self._url or not self._key:
            logger.info("Supabase credentials not configured, ledger disabled")
            return
        try:
            from supabase import create_client
            self._client = create_client(self._url, self._key)
            logger.info("Supabase ledger client initialised")
        except Exception as e:
            logger.warning(f"Failed to initialise Supabase client: {e}")

    def is_available(self) -> bool:
        """Check if the ledger client is configured and ready."""
        return self._client is not None

    def _require_client(self) -> Any:
        if self._client is None:
            raise LedgerTransportError("Supabase not configured")
        return self._client

    def get_user_id(self) -> str:
        """
        Get the signed-in user's id.

        Returns:
            User id, or empty string if not authenticated.
        """
        if not self._client:
            return ""
        try:
            user = self._client.auth.get_user()
            return user.user.id if user else ""
        except Exception:
            return ""

    # ------------------------------------------------------------------
    # Catalog and quota
    # ------------------------------------------------------------------

    def fetch_catalog(self, user_id: str) -> List[AdCatalogEntry]:
        """
        Fetch active ads the user has not completed today.

        Args:
            user_id: The viewer.

        Returns:
            Newest first list of AdCatalogEntry.

        Raises:
            LedgerTransportError: If the backend could not be reached.
        """
        client = self._require_client()
        today = date.today().isoformat()
        try:
            viewed = (
                client.table("ad_view_logs")
                .select("ad_id")
                .eq("user_id", user_id)
                .eq("completed", True)
                .gte("watched_at", today)
                .execute()
            )
            ads = (
                client.table("ads")
                .select("id, title, video_url, duration, earnings")
                .eq("is_active", True)
                .order("created_at", desc=True)
                .execute()
            )
        except Exception as e:
            raise LedgerTransportError(f"Failed to fetch ad catalog: {e}") from e

        watched_ids = {str(row["ad_id"]) for row in (viewed.data or [])}
        catalog = [
            AdCatalogEntry.from_row(row)
            for row in (ads.data or [])
            if str(row.get("id")) not in watched_ids
        ]
        logger.debug(f"Catalog: {len(catalog)} ads available ({len(watched_ids)} watched today)")
        return catalog

    def fetch_daily_quota(self, user_id: str) -> DailyQuota:
        """
        Fetch today's quota snapshot for a user.

        Raises:
            LedgerTransportError: If the backend could not be reached.
        """
        client = self._require_client()
        try:
            result = client.rpc("get_daily_quota", {"p_user_id": user_id}).execute()
        except Exception as e:
            raise LedgerTransportError(f"Failed to fetch daily quota: {e}") from e

        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            raise LedgerTransportError("Empty daily quota response")
        return DailyQuota.from_row(data)

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def submit_completion(self, claim: CompletionClaim) -> ClaimOutcome:
        """
        Submit a completion claim.

        The database function is idempotent on the session nonce, so a
        retried claim returns the original outcome instead of paying twice.

        Args:
            claim: The completion claim.

        Returns:
            ClaimOutcome from the ledger.

        Raises:
            LedgerTransportError: If the call itself failed (safe to retry).
        """
        client = self._require_client()
        try:
            result = client.rpc("submit_ad_completion", claim.to_payload()).execute()
        except Exception as e:
            raise LedgerTransportError(f"Claim submission failed: {e}") from e

        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            raise LedgerTransportError("Empty claim response")
        return ClaimOutcome.from_response(data)

    def report_cheat_attempt(self, user_id: str, ad_id: str, session_nonce: str,
                             events: Optional[List[Dict[str, Any]]] = None) -> bool:
        """
        Log an aborted session for audit. Failures are logged, never raised.

        Returns:
            True if the report was stored, False otherwise.
        """
        if not self._client:
            logger.info("Supabase not configured, skipping cheat report")
            return False
        try:
            self._client.table("ad_view_logs").insert({
                "user_id": user_id,
                "ad_id": ad_id,
                "session_nonce": session_nonce,
                "completed": False,
                "cheat_attempt": True,
                "earnings": 0,
                "details": {"events": events or []},
                "watched_at": datetime.now(timezone.utc).isoformat(),
            }).execute()
            logger.info(f"Cheat attempt reported for ad {ad_id}")
            return True
        except Exception as e:
            logger.warning(f"Failed to report cheat attempt (non-critical): {e}")
            return False
