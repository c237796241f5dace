"""
Activity Recorder - Abstract interface for activity log backends

Both background subsystems write here: the rule engine (AutomationActivity)
and the reannounce scheduler (ReannounceActivity). Records are append-only;
the only removal paths are age-based deletion and the reannounce history cap.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from qbt_automations.models import AutomationActivity, ReannounceActivity

DEFAULT_RETENTION_DAYS = 7
DEFAULT_REANNOUNCE_HISTORY = 50


def retention_cutoff(days: int, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Cutoff for age-based deletion

    Args:
        days: Age in days; 0 means everything, negative means the default (7)
        now: Reference time (defaults to the current UTC time)

    Returns:
        Records created strictly before this time are deleted; None means delete all
    """
    if days is None or days < 0:
        days = DEFAULT_RETENTION_DAYS
    if days == 0:
        return None
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=days)


class ActivityRecorder(ABC):
    """
    Abstract base class for activity log backends

    Implementations must provide:
    - Append-only storage with auto-increment ids
    - Newest-first listing per instance
    - Exact age-based deletion (created_at < now - days)
    - A per-instance cap on reannounce history
    - Thread-safe operations
    """

    def __init__(self, reannounce_history: int = DEFAULT_REANNOUNCE_HISTORY):
        self.reannounce_history = reannounce_history

    # Automation activity

    @abstractmethod
    def record_automation(self, activity: AutomationActivity) -> int:
        """
        Append a rule engine record

        Args:
            activity: Record to store (its id is set on return)

        Returns:
            Assigned record id
        """
        pass

    @abstractmethod
    def list_automation(self, instance_id: int, limit: int = 100) -> List[AutomationActivity]:
        """
        List rule engine records of an instance, newest first

        Args:
            instance_id: Instance ID
            limit: Maximum number of records
        """
        pass

    @abstractmethod
    def delete_automation_older_than(self, instance_id: int, days: int,
                                     now: Optional[datetime] = None) -> int:
        """
        Delete rule engine records created before now - days

        Args:
            instance_id: Instance ID
            days: Age in days (0 deletes all, negative uses the default)
            now: Reference time (defaults to the current UTC time)

        Returns:
            Number of records deleted
        """
        pass

    # Reannounce activity

    @abstractmethod
    def record_reannounce(self, activity: ReannounceActivity) -> int:
        """
        Append a reannounce record, trimming the instance's history to the cap

        Returns:
            Assigned record id
        """
        pass

    @abstractmethod
    def list_reannounce(self, instance_id: int, limit: int = 100) -> List[ReannounceActivity]:
        """List reannounce records of an instance, newest first"""
        pass

    @abstractmethod
    def delete_reannounce_older_than(self, instance_id: int, days: int,
                                     now: Optional[datetime] = None) -> int:
        """Delete reannounce records older than now - days (same semantics as automation)"""
        pass

    # Maintenance

    @abstractmethod
    def prune(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """
        Delete records older than the retention window for every instance

        Returns:
            Total number of records deleted
        """
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """
        Check if backend is healthy and accessible

        Returns:
            True if healthy, False otherwise
        """
        pass

    def close(self):
        """Release backend resources"""
        pass
