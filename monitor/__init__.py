"""
Engagement monitoring package.

Signal sources and the strike/audit policy that decides whether an ad
session continues, warns or aborts.
"""

from monitor.engagement import EngagementMonitor, EngagementPolicy
from monitor.signals import DisengagementEvent, SyntheticSignalSource

__all__ = ["EngagementMonitor", "EngagementPolicy", "DisengagementEvent", "SyntheticSignalSource"]
