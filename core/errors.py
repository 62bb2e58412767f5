"""
Error taxonomy for the ad-watch engine.

Every failure the UI can see is one of these kinds. Raw transport or
signal-source exceptions are converted before they leave the engine.
"""

from typing import Optional

import config


class AdWatchError(Exception):
    """Base class for ad-watch errors."""

    error_type = "ad_watch_error"

    def __init__(self, message: str = "", reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason

    def __str__(self) -> str:
        return self.message or self.error_type


class InvalidAdSelection(AdWatchError):
    """Catalog entry failed validation; the session never armed."""

    error_type = "invalid_ad"


class DailyLimitReached(InvalidAdSelection):
    """Quota snapshot shows no ads remaining today."""

    error_type = "daily_limit_reached"


class LockAcquisitionFailure(AdWatchError):
    """Fullscreen could not be acquired. Retry while still armed."""

    error_type = "lock_failed"


class PolicyAbort(AdWatchError):
    """Disengagement reached the strike threshold."""

    error_type = "policy_abort"


class ClaimRejected(AdWatchError):
    """The ledger authoritatively denied the reward."""

    error_type = "claim_rejected"

    def __init__(self, reason: Optional[str] = None, message: str = "") -> None:
        if not message:
            message = config.REJECTION_MESSAGES.get(
                reason or "", config.OUTCOME_MESSAGES[config.ABORT_CLAIM_REJECTED]
            )
        super().__init__(message, reason=reason)


class ClaimTransportFailure(AdWatchError):
    """Claim could not be delivered within the retry budget."""

    error_type = "claim_transport_failure"


class LedgerTransportError(Exception):
    """Raised by ledger clients when the backend call itself fails."""
