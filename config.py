"""Configuration settings for AdEarn."""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv


def get_user_data_dir() -> Path:
    """
    Get the directory for user-writable data (daily stats cache, etc.).

    ADEARN_DATA_DIR overrides the location. Otherwise development checkouts
    keep data next to this file and installed copies use a per-user folder.

    Returns:
        Path to the user data directory.
    """
    override = os.getenv("ADEARN_DATA_DIR", "")
    if override:
        return Path(override)

    project_data = Path(__file__).parent / "data"
    if os.access(Path(__file__).parent, os.W_OK):
        return project_data

    if sys.platform == 'darwin':
        return Path.home() / "Library" / "Application Support" / "AdEarn"
    elif sys.platform == 'win32':
        appdata = os.environ.get('APPDATA')
        if appdata:
            return Path(appdata) / "AdEarn"
        return Path.home() / "AppData" / "Roaming" / "AdEarn"
    return Path.home() / ".local" / "share" / "AdEarn"


def _get_float(env_var: str, default: float) -> float:
    """Read a float from the environment, falling back on bad input."""
    raw = os.getenv(env_var, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        import logging
        logging.getLogger(__name__).warning(
            f"{env_var}={raw!r} is not a number, using default {default}"
        )
        return default


def _get_int(env_var: str, default: int) -> int:
    """Read an int from the environment, falling back on bad input."""
    return int(_get_float(env_var, float(default)))


# Explicitly load from the project root so .env is found regardless of cwd
_env_path = Path(__file__).parent / ".env"
load_dotenv(_env_path)

# User data directory (for writable data like the daily stats cache)
USER_DATA_DIR = get_user_data_dir()
DAILY_STATS_FILE = USER_DATA_DIR / "daily_stats.json"

# Ad duration bounds (seconds). Catalog entries outside this range are rejected.
MIN_AD_DURATION_SECONDS = _get_int("MIN_AD_DURATION_SECONDS", 10)
MAX_AD_DURATION_SECONDS = _get_int("MAX_AD_DURATION_SECONDS", 300)

# Countdown cadence
TICK_INTERVAL_SECONDS = _get_float("TICK_INTERVAL_SECONDS", 1.0)

# Engagement policy tuning
# Strikes within one session that abort it. Strikes never decay.
STRIKE_THRESHOLD = _get_int("STRIKE_THRESHOLD", 2)
# Periodic audit: every AUDIT_INTERVAL_SECONDS, check focus/visibility
# with probability AUDIT_PROBABILITY
AUDIT_INTERVAL_SECONDS = _get_float("AUDIT_INTERVAL_SECONDS", 5.0)
AUDIT_PROBABILITY = _get_float("AUDIT_PROBABILITY", 0.3)

# Completion claim submission
CLAIM_MAX_RETRIES = _get_int("CLAIM_MAX_RETRIES", 3)  # Retries after the first attempt
CLAIM_INITIAL_DELAY = _get_float("CLAIM_INITIAL_DELAY", 1.0)
CLAIM_MAX_DELAY = _get_float("CLAIM_MAX_DELAY", 8.0)
CLAIM_BACKOFF_FACTOR = _get_float("CLAIM_BACKOFF_FACTOR", 2.0)
CLAIM_TIMEOUT_SECONDS = _get_float("CLAIM_TIMEOUT_SECONDS", 30.0)  # Overall ceiling

# Session phases
PHASE_IDLE = "idle"
PHASE_ARMED = "armed"
PHASE_ENGAGED = "engaged"
PHASE_COMPLETING = "completing"
PHASE_COMPLETED = "completed"
PHASE_ABORTED = "aborted"

TERMINAL_PHASES = (PHASE_COMPLETED, PHASE_ABORTED)

# Disengagement event kinds
EVENT_TAB_HIDDEN = "tab_hidden"
EVENT_WINDOW_BLUR = "window_blur"
EVENT_FULLSCREEN_EXIT = "fullscreen_exit"
EVENT_POINTER_LEAVE = "pointer_leave_viewport"

DISENGAGEMENT_KINDS = (
    EVENT_TAB_HIDDEN,
    EVENT_WINDOW_BLUR,
    EVENT_FULLSCREEN_EXIT,
    EVENT_POINTER_LEAVE,
)

# Abort reasons (kept distinct so the UI can explain each one)
ABORT_CHEAT_DETECTED = "cheat_detected"
ABORT_USER_CANCELLED = "user_cancelled"
ABORT_CLAIM_REJECTED = "claim_rejected"
ABORT_CLAIM_TRANSPORT = "claim_transport_failure"

# Messages shown for each outcome
OUTCOME_MESSAGES = {
    ABORT_CHEAT_DETECTED: "Cheating detected! Please watch the entire ad properly.",
    ABORT_USER_CANCELLED: "Ad closed. Your progress on this ad was not saved.",
    ABORT_CLAIM_REJECTED: "The ad finished but no reward was granted.",
    ABORT_CLAIM_TRANSPORT: "Could not reach the server to credit this ad. Please try again.",
}

# Rejection reasons the ledger may return, with user-facing text
REJECTION_MESSAGES = {
    "quota_exhausted": "You have reached your daily ad limit.",
    "already_watched_today": "You have already watched this ad today.",
    "invalid_nonce": "This viewing session was not recognised by the server.",
    "ad_not_found": "This ad is no longer available.",
}

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")  # Can override in .env: DEBUG, INFO, WARNING, ERROR
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Supabase Configuration (ad catalog, daily quota, completion ledger)
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
