"""
Rule and reannounce settings persistence
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Union

from qbt_automations.conditions import validate_rule
from qbt_automations.database import SQLiteDatabase, to_timestamp, from_timestamp
from qbt_automations.errors import RuleNotFoundError, RuleValidationError
from qbt_automations.models import AutomationRule, ReannounceSettings

logger = logging.getLogger(__name__)

# Columns of automation_rules that are not kept in the JSON payload
_COLUMN_KEYS = ('id', 'instanceId', 'name', 'enabled', 'sortOrder', 'createdAt', 'updatedAt')


class RuleStore:
    """
    CRUD for automation rules and per-instance reannounce settings

    Rules are returned in evaluation order: sort_order ascending, then id ascending.
    """

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    # Rules

    def list_rules(self, instance_id: int, enabled_only: bool = False) -> List[AutomationRule]:
        """
        List rules of an instance in evaluation order

        Args:
            instance_id: Instance ID
            enabled_only: Skip disabled rules

        Returns:
            List of AutomationRule
        """
        query = 'SELECT * FROM automation_rules WHERE instance_id = ?'
        if enabled_only:
            query += ' AND enabled = 1'
        query += ' ORDER BY sort_order ASC, id ASC'

        cursor = self.db.get_connection().execute(query, (instance_id,))
        return [self._row_to_rule(row) for row in cursor.fetchall()]

    def get_rule(self, instance_id: int, rule_id: int) -> AutomationRule:
        """
        Get one rule

        Raises:
            RuleNotFoundError: If the rule does not exist for the instance
        """
        cursor = self.db.get_connection().execute(
            'SELECT * FROM automation_rules WHERE instance_id = ? AND id = ?',
            (instance_id, rule_id)
        )
        row = cursor.fetchone()
        if not row:
            raise RuleNotFoundError(instance_id, rule_id)
        return self._row_to_rule(row)

    def create_rule(self, instance_id: int, data: Union[Dict[str, Any], AutomationRule]) -> AutomationRule:
        """
        Validate and store a new rule

        A missing or zero sortOrder places the rule after all existing rules.

        Raises:
            RuleValidationError: If the rule is invalid
        """
        rule = self._coerce(instance_id, data)
        validate_rule(rule)

        now = datetime.now(timezone.utc)
        with self.db.transaction() as conn:
            if not rule.sort_order:
                cursor = conn.execute(
                    'SELECT COALESCE(MAX(sort_order), 0) FROM automation_rules WHERE instance_id = ?',
                    (instance_id,)
                )
                rule.sort_order = cursor.fetchone()[0] + 1

            cursor = conn.execute('''
                INSERT INTO automation_rules
                    (instance_id, name, enabled, sort_order, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (instance_id, rule.name, int(rule.enabled), rule.sort_order,
                  self._payload(rule), to_timestamp(now), to_timestamp(now)))
            rule.id = cursor.lastrowid

        rule.created_at = rule.updated_at = now
        logger.info(f"Created rule {rule.id} '{rule.name}' for instance {instance_id}")
        return rule

    def update_rule(self, instance_id: int, rule_id: int,
                    data: Union[Dict[str, Any], AutomationRule]) -> AutomationRule:
        """
        Replace a rule's definition

        The existing sortOrder is kept when the update does not carry one.

        Raises:
            RuleNotFoundError: If the rule does not exist
            RuleValidationError: If the new definition is invalid
        """
        existing = self.get_rule(instance_id, rule_id)
        rule = self._coerce(instance_id, data)
        if isinstance(data, dict) and data.get('sortOrder') is None:
            rule.sort_order = existing.sort_order
        rule.id = rule_id
        validate_rule(rule)

        now = datetime.now(timezone.utc)
        with self.db.transaction() as conn:
            conn.execute('''
                UPDATE automation_rules
                SET name = ?, enabled = ?, sort_order = ?, payload = ?, updated_at = ?
                WHERE instance_id = ? AND id = ?
            ''', (rule.name, int(rule.enabled), rule.sort_order, self._payload(rule),
                  to_timestamp(now), instance_id, rule_id))

        rule.created_at = existing.created_at
        rule.updated_at = now
        logger.info(f"Updated rule {rule_id} '{rule.name}' for instance {instance_id}")
        return rule

    def delete_rule(self, instance_id: int, rule_id: int) -> bool:
        """
        Delete a rule

        Raises:
            RuleNotFoundError: If the rule does not exist
        """
        cursor = self.db.get_connection().execute(
            'DELETE FROM automation_rules WHERE instance_id = ? AND id = ?',
            (instance_id, rule_id)
        )
        if cursor.rowcount == 0:
            raise RuleNotFoundError(instance_id, rule_id)

        logger.info(f"Deleted rule {rule_id} from instance {instance_id}")
        return True

    def reorder_rules(self, instance_id: int, ordered_ids: List[int]) -> List[AutomationRule]:
        """
        Set evaluation order: the rule at index i gets sort_order i + 1

        Rules not listed keep their relative order after the listed ones.
        All updates happen in one transaction.

        Raises:
            RuleNotFoundError: If an id does not belong to the instance
            RuleValidationError: If an id is listed twice
        """
        ordered_ids = [int(rule_id) for rule_id in ordered_ids]
        if len(set(ordered_ids)) != len(ordered_ids):
            raise RuleValidationError('<order>', "ruleIds contains duplicates")

        with self.db.transaction() as conn:
            cursor = conn.execute(
                'SELECT id FROM automation_rules WHERE instance_id = ? ORDER BY sort_order ASC, id ASC',
                (instance_id,)
            )
            current = [row['id'] for row in cursor.fetchall()]

            for rule_id in ordered_ids:
                if rule_id not in current:
                    raise RuleNotFoundError(instance_id, rule_id)

            remaining = [rule_id for rule_id in current if rule_id not in ordered_ids]
            for idx, rule_id in enumerate(ordered_ids + remaining):
                conn.execute(
                    'UPDATE automation_rules SET sort_order = ? WHERE instance_id = ? AND id = ?',
                    (idx + 1, instance_id, rule_id)
                )

        logger.info(f"Reordered {len(ordered_ids)} rule(s) for instance {instance_id}")
        return self.list_rules(instance_id)

    # Reannounce settings

    def get_reannounce_settings(self, instance_id: int) -> ReannounceSettings:
        """Get reannounce settings (defaults when never saved)"""
        cursor = self.db.get_connection().execute(
            'SELECT * FROM reannounce_settings WHERE instance_id = ?', (instance_id,)
        )
        row = cursor.fetchone()
        if not row:
            return ReannounceSettings(instance_id=instance_id)

        settings = ReannounceSettings.from_dict(json.loads(row['payload']), instance_id=instance_id)
        settings.updated_at = from_timestamp(row['updated_at'])
        return settings

    def update_reannounce_settings(self, instance_id: int,
                                   data: Union[Dict[str, Any], ReannounceSettings]) -> ReannounceSettings:
        """
        Save reannounce settings

        Raises:
            RuleValidationError: If a numeric field is invalid
        """
        if isinstance(data, ReannounceSettings):
            settings = data
            settings.instance_id = instance_id
        else:
            settings = ReannounceSettings.from_dict(data, instance_id=instance_id)

        now = datetime.now(timezone.utc)
        payload = settings.to_dict()
        for key in ('instanceId', 'updatedAt'):
            payload.pop(key, None)

        self.db.get_connection().execute('''
            INSERT INTO reannounce_settings (instance_id, payload, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(instance_id) DO UPDATE SET payload = excluded.payload, updated_at = excluded.updated_at
        ''', (instance_id, json.dumps(payload), to_timestamp(now)))

        settings.updated_at = now
        logger.info(f"Updated reannounce settings for instance {instance_id} (enabled={settings.enabled})")
        return settings

    # Helpers

    @staticmethod
    def _coerce(instance_id: int, data: Union[Dict[str, Any], AutomationRule]) -> AutomationRule:
        if isinstance(data, AutomationRule):
            data.instance_id = instance_id
            return data
        return AutomationRule.from_dict(data, instance_id=instance_id)

    @staticmethod
    def _payload(rule: AutomationRule) -> str:
        data = rule.to_dict()
        for key in _COLUMN_KEYS:
            data.pop(key, None)
        return json.dumps(data)

    @staticmethod
    def _row_to_rule(row) -> AutomationRule:
        data = json.loads(row['payload'])
        data.update({
            'id': row['id'],
            'name': row['name'],
            'enabled': bool(row['enabled']),
            'sortOrder': row['sort_order'],
        })
        rule = AutomationRule.from_dict(data, instance_id=row['instance_id'])
        rule.created_at = from_timestamp(row['created_at'])
        rule.updated_at = from_timestamp(row['updated_at'])
        return rule
