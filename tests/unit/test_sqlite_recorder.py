"""
Tests for the SQLite activity log

Test coverage for:
- Appending and listing records newest first
- Exact age-based deletion boundaries
- Reannounce history cap
- Pruning across instances
- Backend factory
"""

import pytest
from datetime import datetime, timedelta, timezone

from qbt_automations.activity import retention_cutoff
from qbt_automations.activity_backends import create_recorder
from qbt_automations.activity_backends.sqlite_recorder import SQLiteActivityRecorder
from qbt_automations.models import (
    ActivityAction, ActivityOutcome, AutomationActivity, ReannounceActivity, ReannounceOutcome
)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def automation(instance_id=1, created_at=None, **kwargs):
    values = {
        'instance_id': instance_id, 'hash': 'abc', 'torrent_name': 'Some.Torrent',
        'tracker_domain': 'tracker.example.com', 'rule_id': 3, 'rule_name': 'cleanup',
        'action': ActivityAction.DELETED_RATIO, 'outcome': ActivityOutcome.SUCCESS,
        'reason': 'ratio limit reached', 'details': {'ratio': 2.1}, 'created_at': created_at or NOW,
    }
    values.update(kwargs)
    return AutomationActivity(**values)


def reannounce(instance_id=1, timestamp=None, reason='reannounce requested'):
    return ReannounceActivity(
        instance_id=instance_id, hash='abc', torrent_name='Some.Torrent', trackers='tracker.example.com',
        outcome=ReannounceOutcome.SUCCEEDED, reason=reason, timestamp=timestamp or NOW
    )


# ============================================================================
# Automation records
# ============================================================================

class TestAutomationRecords:
    """Test rule engine records"""

    def test_record_and_list(self, recorder):
        """Records round-trip with all their fields"""
        record_id = recorder.record_automation(automation())

        records = recorder.list_automation(1)
        assert len(records) == 1
        record = records[0]
        assert record.id == record_id
        assert record.created_at == NOW
        assert record.rule_id == 3
        assert record.rule_name == 'cleanup'
        assert record.tracker_domain == 'tracker.example.com'
        assert record.details == {'ratio': 2.1}
        assert record.to_dict()['reason'] == 'ratio limit reached'

    def test_empty_reason_stored_as_null(self, recorder):
        """An empty reason is reported as None"""
        recorder.record_automation(automation(reason='', details=None))

        record = recorder.list_automation(1)[0]
        assert record.to_dict()['reason'] is None
        assert record.details == {}

    def test_ids_increase(self, recorder):
        """Ids are assigned in append order"""
        first = recorder.record_automation(automation())
        second = recorder.record_automation(automation())
        assert second > first

    def test_newest_first_and_limit(self, recorder):
        """Listing is newest first and honours the limit"""
        for minutes in (3, 1, 2):
            recorder.record_automation(automation(created_at=NOW + timedelta(minutes=minutes),
                                                  torrent_name=f"t{minutes}"))

        assert [r.torrent_name for r in recorder.list_automation(1)] == ['t3', 't2', 't1']
        assert [r.torrent_name for r in recorder.list_automation(1, limit=2)] == ['t3', 't2']
        assert recorder.list_automation(1, limit=0) == []

    def test_instances_are_separate(self, recorder):
        """Each instance sees only its own records"""
        recorder.record_automation(automation(instance_id=1))
        recorder.record_automation(automation(instance_id=2))

        assert len(recorder.list_automation(1)) == 1
        assert recorder.list_automation(3) == []


# ============================================================================
# Age-based deletion
# ============================================================================

class TestDeleteOlderThan:
    """Test exact age-based deletion"""

    def test_exact_boundary(self, recorder):
        """Records exactly at the cutoff survive; strictly older ones are deleted"""
        cutoff = NOW - timedelta(days=7)
        recorder.record_automation(automation(created_at=cutoff, torrent_name='at'))
        recorder.record_automation(automation(created_at=cutoff - timedelta(microseconds=1), torrent_name='before'))
        recorder.record_automation(automation(created_at=NOW, torrent_name='new'))

        deleted = recorder.delete_automation_older_than(1, 7, now=NOW)

        assert deleted == 1
        assert sorted(r.torrent_name for r in recorder.list_automation(1)) == ['at', 'new']

    def test_zero_days_deletes_all(self, recorder):
        """days=0 deletes every record of the instance"""
        recorder.record_automation(automation(instance_id=1))
        recorder.record_automation(automation(instance_id=2))

        assert recorder.delete_automation_older_than(1, 0, now=NOW) == 1
        assert recorder.list_automation(1) == []
        assert len(recorder.list_automation(2)) == 1

    def test_negative_days_uses_default(self, recorder):
        """Negative days fall back to seven days"""
        recorder.record_automation(automation(created_at=NOW - timedelta(days=6)))
        recorder.record_automation(automation(created_at=NOW - timedelta(days=8)))

        assert recorder.delete_automation_older_than(1, -1, now=NOW) == 1

    def test_reannounce_boundary(self, recorder):
        """Reannounce records use the same cutoff semantics"""
        recorder.record_reannounce(reannounce(timestamp=NOW - timedelta(days=1)))
        recorder.record_reannounce(reannounce(timestamp=NOW - timedelta(days=1, seconds=1)))

        assert recorder.delete_reannounce_older_than(1, 1, now=NOW) == 1
        assert len(recorder.list_reannounce(1)) == 1

    def test_retention_cutoff(self):
        """retention_cutoff maps days to a cutoff time"""
        assert retention_cutoff(0, NOW) is None
        assert retention_cutoff(2, NOW) == NOW - timedelta(days=2)
        assert retention_cutoff(None, NOW) == NOW - timedelta(days=7)


# ============================================================================
# Reannounce history
# ============================================================================

class TestReannounceHistory:
    """Test the per-instance reannounce cap"""

    def test_history_cap(self, db):
        """Only the newest records per instance are kept"""
        recorder = SQLiteActivityRecorder(db=db, reannounce_history=3)
        for i in range(5):
            recorder.record_reannounce(reannounce(timestamp=NOW + timedelta(seconds=i), reason=f"r{i}"))
        recorder.record_reannounce(reannounce(instance_id=2))

        assert [r.reason for r in recorder.list_reannounce(1)] == ['r4', 'r3', 'r2']
        assert len(recorder.list_reannounce(2)) == 1

    def test_zero_cap_keeps_everything(self, db):
        """A cap of 0 disables trimming"""
        recorder = SQLiteActivityRecorder(db=db, reannounce_history=0)
        for i in range(4):
            recorder.record_reannounce(reannounce(timestamp=NOW + timedelta(seconds=i)))

        assert len(recorder.list_reannounce(1)) == 4


# ============================================================================
# Maintenance and factory
# ============================================================================

class TestMaintenance:
    """Test pruning, health and the factory"""

    def test_prune_all_instances(self, recorder):
        """prune removes old records of every instance and both logs"""
        old = datetime.now(timezone.utc) - timedelta(days=30)
        recorder.record_automation(automation(instance_id=1, created_at=old))
        recorder.record_automation(automation(instance_id=2, created_at=old))
        recorder.record_automation(automation(instance_id=2, created_at=datetime.now(timezone.utc)))
        recorder.record_reannounce(reannounce(timestamp=old))

        assert recorder.prune(7) == 3
        assert len(recorder.list_automation(2)) == 1

    def test_health_check(self, recorder):
        """A working database is healthy"""
        assert recorder.health_check() is True

    def test_owns_database_from_path(self, tmp_path):
        """A recorder created from a path opens and closes its own database"""
        recorder = SQLiteActivityRecorder(db_path=str(tmp_path / "activity.db"))
        recorder.record_automation(automation())

        assert (tmp_path / "activity.db").exists()
        recorder.close()

    def test_create_recorder_sqlite(self, db):
        """The factory builds a SQLite recorder sharing a database"""
        recorder = create_recorder('sqlite', db=db, reannounce_history=10)

        assert isinstance(recorder, SQLiteActivityRecorder)
        assert recorder.db is db
        assert recorder.reannounce_history == 10

    def test_create_recorder_unknown(self):
        """Unknown backends are rejected"""
        with pytest.raises(ValueError, match='Unknown activity backend'):
            create_recorder('mongodb')
