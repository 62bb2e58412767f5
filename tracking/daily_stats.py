"""
Daily earnings tracker for AdEarn.

Keeps a local tally of ads watched and money earned today so the
dashboard can update immediately after an accepted claim, before the
next ledger refresh. Automatically resets at midnight.

The ledger stays authoritative: this cache is display state only and is
overwritten whenever the server reports fresh totals.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import date
from pathlib import Path
from typing import Dict, Any, List, Optional

import config

logger = logging.getLogger(__name__)


class DailyStatsTracker:
    """
    Tracks today's watched ads and earnings.

    Data is stored locally in a JSON file and resets automatically
    when the date changes (midnight reset).
    """

    def __init__(self, data_file: Optional[Path] = None):
        """
        Initialize the tracker and load existing data.

        Args:
            data_file: JSON file to use. Defaults to config.DAILY_STATS_FILE.
        """
        self.data_file: Path = data_file or config.DAILY_STATS_FILE
        self._lock = threading.Lock()  # Thread safety for data operations
        self.data = self._load_data()

        self._check_and_reset_if_new_day()

    def _load_data(self) -> Dict[str, Any]:
        """
        Load daily stats from JSON file.

        Returns:
            Dict containing daily statistics.
        """
        if self.data_file.exists():
            try:
                with open(self.data_file, 'r') as f:
                    data = json.load(f)
                    logger.debug(f"Loaded daily stats: {data}")
                    return data
            except (json.JSONDecodeError, IOError, OSError, PermissionError) as e:
                logger.warning(f"Failed to load daily stats: {e}. Starting fresh.")

        return self._create_empty_day_data()

    def _create_empty_day_data(self) -> Dict[str, Any]:
        """Create empty data structure for a new day."""
        return {
            "date": date.today().isoformat(),
            "ads_watched": 0,
            "earnings": 0.0,
            "completed_ad_ids": [],
        }

    def _save_data(self) -> None:
        """
        Save daily stats to JSON file atomically.

        Writes to a temp file, then renames over the real one.
        """
        try:
            self.data_file.parent.mkdir(parents=True, exist_ok=True)

            temp_fd, temp_path = tempfile.mkstemp(
                suffix='.tmp',
                prefix='daily_stats_',
                dir=self.data_file.parent
            )

            try:
                with os.fdopen(temp_fd, 'w') as f:
                    json.dump(self.data, f, indent=2)
                os.replace(temp_path, self.data_file)
                logger.debug(f"Saved daily stats: {self.data}")
            except Exception:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise

        except (IOError, OSError, PermissionError) as e:
            logger.error(f"Failed to save daily stats: {e}")

    def _check_and_reset_if_new_day(self) -> None:
        """Check if the date has changed and reset stats if needed."""
        today = date.today().isoformat()
        stored_date = self.data.get("date", "")

        if stored_date != today:
            logger.info(f"New day detected ({stored_date} -> {today}). Resetting daily stats.")
            self.data = self._create_empty_day_data()
            self._save_data()

    def record_completion(self, ad_id: str, earnings: float,
                          server_stats: Optional[Dict[str, Any]] = None) -> None:
        """
        Add an accepted claim to today's totals (thread-safe).

        When the ledger returned fresh totals they replace the local ones.

        Args:
            ad_id: The ad that was credited.
            earnings: Amount credited.
            server_stats: Optional {"ads_today", "earnings_today"} from the ledger.

        Raises:
            ValueError: If earnings is negative.
        """
        if earnings < 0:
            raise ValueError("earnings must be non-negative")

        with self._lock:
            self._check_and_reset_if_new_day()

            if ad_id not in self.data["completed_ad_ids"]:
                self.data["completed_ad_ids"].append(ad_id)

            if server_stats and "ads_today" in server_stats:
                self.data["ads_watched"] = int(server_stats["ads_today"])
                self.data["earnings"] = float(server_stats.get("earnings_today", self.data["earnings"]))
            else:
                self.data["ads_watched"] += 1
                self.data["earnings"] += float(earnings)

            self._save_data()
            logger.info(f"Daily totals: {self.data['ads_watched']} ads, earnings {self.data['earnings']:.2f}")

    def has_completed(self, ad_id: str) -> bool:
        """Whether an ad was credited today according to the local tally."""
        with self._lock:
            self._check_and_reset_if_new_day()
            return ad_id in self.data["completed_ad_ids"]

    def get_daily_stats(self) -> Dict[str, Any]:
        """
        Get current daily statistics.

        Returns:
            Dict with date, ads_watched, earnings and completed_ad_ids.
        """
        with self._lock:
            self._check_and_reset_if_new_day()
            data = self.data.copy()
            data["completed_ad_ids"] = list(self.data["completed_ad_ids"])
            return data

    def get_completed_ad_ids(self) -> List[str]:
        with self._lock:
            self._check_and_reset_if_new_day()
            return list(self.data["completed_ad_ids"])
