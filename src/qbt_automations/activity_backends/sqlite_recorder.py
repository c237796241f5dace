"""
SQLite Activity Backend

Default activity log, stored in the same database as the rules.
"""

import json
import sqlite3
import logging
from datetime import datetime
from typing import List, Optional

from qbt_automations.activity import ActivityRecorder, DEFAULT_REANNOUNCE_HISTORY, DEFAULT_RETENTION_DAYS, retention_cutoff
from qbt_automations.database import SQLiteDatabase, to_timestamp, from_timestamp
from qbt_automations.models import AutomationActivity, ReannounceActivity

logger = logging.getLogger(__name__)


class SQLiteActivityRecorder(ActivityRecorder):
    """
    SQLite-based activity log

    Uses two append-only tables:
    - automation_activity: Rule engine records
    - reannounce_activity: Reannounce scheduler records
    """

    def __init__(self, db: Optional[SQLiteDatabase] = None, db_path: str = '/config/qbt-automations.db',
                 reannounce_history: int = DEFAULT_REANNOUNCE_HISTORY):
        """
        Initialize SQLite activity log

        Args:
            db: Shared database (created from db_path when omitted)
            db_path: Path to SQLite database file
            reannounce_history: Per-instance cap on reannounce records
        """
        super().__init__(reannounce_history)
        self._owns_db = db is None
        self.db = db or SQLiteDatabase(db_path)

        logger.info(f"SQLite activity log initialized: {self.db.db_path}")

    # Automation activity

    def record_automation(self, activity: AutomationActivity) -> int:
        """Append a rule engine record"""
        conn = self.db.get_connection()
        cursor = conn.execute('''
            INSERT INTO automation_activity
                (instance_id, created_at, hash, torrent_name, tracker_domain, rule_id, rule_name,
                 action, outcome, reason, details)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            activity.instance_id, to_timestamp(activity.created_at), activity.hash,
            activity.torrent_name, activity.tracker_domain, activity.rule_id, activity.rule_name,
            activity.action, activity.outcome, activity.reason or None,
            json.dumps(activity.details) if activity.details else None
        ))

        activity.id = cursor.lastrowid
        logger.debug(f"Recorded activity {activity.id}: {activity.action}/{activity.outcome} for {activity.hash}")
        return activity.id

    def list_automation(self, instance_id: int, limit: int = 100) -> List[AutomationActivity]:
        """List rule engine records, newest first"""
        cursor = self.db.get_connection().execute('''
            SELECT * FROM automation_activity
            WHERE instance_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        ''', (instance_id, max(0, int(limit))))
        return [self._row_to_automation(row) for row in cursor.fetchall()]

    def delete_automation_older_than(self, instance_id: int, days: int,
                                     now: Optional[datetime] = None) -> int:
        """Delete rule engine records created before now - days"""
        return self._delete_older_than('automation_activity', 'created_at', instance_id, days, now)

    # Reannounce activity

    def record_reannounce(self, activity: ReannounceActivity) -> int:
        """Append a reannounce record and enforce the history cap"""
        with self.db.transaction() as conn:
            cursor = conn.execute('''
                INSERT INTO reannounce_activity
                    (instance_id, hash, torrent_name, trackers, timestamp, outcome, reason)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                activity.instance_id, activity.hash, activity.torrent_name, activity.trackers,
                to_timestamp(activity.timestamp), activity.outcome, activity.reason
            ))
            activity.id = cursor.lastrowid

            if self.reannounce_history > 0:
                conn.execute('''
                    DELETE FROM reannounce_activity
                    WHERE instance_id = ? AND id NOT IN (
                        SELECT id FROM reannounce_activity
                        WHERE instance_id = ?
                        ORDER BY timestamp DESC, id DESC
                        LIMIT ?
                    )
                ''', (activity.instance_id, activity.instance_id, self.reannounce_history))

        return activity.id

    def list_reannounce(self, instance_id: int, limit: int = 100) -> List[ReannounceActivity]:
        """List reannounce records, newest first"""
        cursor = self.db.get_connection().execute('''
            SELECT * FROM reannounce_activity
            WHERE instance_id = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        ''', (instance_id, max(0, int(limit))))
        return [self._row_to_reannounce(row) for row in cursor.fetchall()]

    def delete_reannounce_older_than(self, instance_id: int, days: int,
                                     now: Optional[datetime] = None) -> int:
        """Delete reannounce records created before now - days"""
        return self._delete_older_than('reannounce_activity', 'timestamp', instance_id, days, now)

    # Maintenance

    def prune(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete records older than the retention window across all instances"""
        cutoff = retention_cutoff(retention_days)
        conn = self.db.get_connection()

        deleted = 0
        for table, column in (('automation_activity', 'created_at'), ('reannounce_activity', 'timestamp')):
            if cutoff is None:
                cursor = conn.execute(f'DELETE FROM {table}')
            else:
                cursor = conn.execute(f'DELETE FROM {table} WHERE {column} < ?', (to_timestamp(cutoff),))
            deleted += cursor.rowcount

        if deleted > 0:
            logger.info(f"Pruned {deleted} activity record(s) older than {retention_days} day(s)")
        return deleted

    def health_check(self) -> bool:
        """Check if database is accessible"""
        return self.db.health_check()

    def close(self):
        """Close the database if this recorder opened it"""
        if self._owns_db:
            self.db.close()

    # Helpers

    def _delete_older_than(self, table: str, column: str, instance_id: int, days: int,
                           now: Optional[datetime]) -> int:
        cutoff = retention_cutoff(days, now)
        conn = self.db.get_connection()

        if cutoff is None:
            cursor = conn.execute(f'DELETE FROM {table} WHERE instance_id = ?', (instance_id,))
        else:
            cursor = conn.execute(
                f'DELETE FROM {table} WHERE instance_id = ? AND {column} < ?',
                (instance_id, to_timestamp(cutoff))
            )

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Deleted {deleted} {table} record(s) for instance {instance_id}")
        return deleted

    @staticmethod
    def _row_to_automation(row: sqlite3.Row) -> AutomationActivity:
        return AutomationActivity(
            id=row['id'],
            instance_id=row['instance_id'],
            created_at=from_timestamp(row['created_at']),
            hash=row['hash'],
            torrent_name=row['torrent_name'] or '',
            tracker_domain=row['tracker_domain'] or '',
            rule_id=row['rule_id'],
            rule_name=row['rule_name'] or '',
            action=row['action'],
            outcome=row['outcome'],
            reason=row['reason'] or '',
            details=json.loads(row['details']) if row['details'] else {}
        )

    @staticmethod
    def _row_to_reannounce(row: sqlite3.Row) -> ReannounceActivity:
        return ReannounceActivity(
            id=row['id'],
            instance_id=row['instance_id'],
            hash=row['hash'],
            torrent_name=row['torrent_name'] or '',
            trackers=row['trackers'] or '',
            timestamp=from_timestamp(row['timestamp']),
            outcome=row['outcome'],
            reason=row['reason'] or ''
        )
