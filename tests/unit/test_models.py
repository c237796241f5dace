"""
Tests for rule, snapshot, settings and activity models
"""

import pytest
from datetime import datetime, timezone

from qbt_automations.errors import RuleValidationError
from qbt_automations.models import (
    ActivityAction, AutomationActivity, AutomationRule, Condition, DeleteMode, ExpressionActions,
    LegacyActions, ReannounceActivity, ReannounceOutcome, ReannounceSettings, RuleScope, TagActionMode,
    TorrentSnapshot
)


# ============================================================================
# Rules
# ============================================================================

class TestAutomationRule:
    """Test rule parsing and the legacy/expression variant"""

    def test_legacy_rule(self, legacy_rule):
        """Rules without conditions use the legacy shape"""
        rule = AutomationRule.from_dict(legacy_rule, instance_id=1)

        assert rule.is_expression is False
        assert isinstance(rule.actions, LegacyActions)
        assert rule.instance_id == 1
        assert rule.enabled is True
        assert rule.actions.upload_limit_kib == 1024
        assert rule.actions.ratio_limit == 2.0
        assert rule.actions.delete_mode == DeleteMode.DELETE

    def test_expression_rule(self, expression_rule):
        """A schemaVersion selects the expression shape"""
        rule = AutomationRule.from_dict(expression_rule)

        assert rule.is_expression is True
        assert [a.kind for a in rule.actions.sub_actions()] == ['tag']
        assert rule.actions.tag.mode == TagActionMode.ADD
        assert rule.actions.tag.condition.operator == 'GREATER_THAN_OR_EQUAL'

    def test_blank_schema_version_is_legacy(self):
        """An empty schemaVersion does not make a rule an expression rule"""
        rule = AutomationRule.from_dict({'name': 'x', 'conditions': {'schemaVersion': ' '}, 'ratioLimit': 1})

        assert rule.is_expression is False
        assert rule.actions.ratio_limit == 1.0

    def test_mixed_shapes_rejected(self, expression_rule):
        """Legacy fields and expression conditions cannot be combined"""
        expression_rule['uploadLimitKiB'] = 100

        with pytest.raises(RuleValidationError) as exc:
            AutomationRule.from_dict(expression_rule)
        assert 'cannot combine' in exc.value.details['Problem']

    def test_inert_legacy_fields_allowed(self, expression_rule):
        """Null or 'none' legacy fields do not count as mixing"""
        expression_rule.update({'uploadLimitKiB': None, 'deleteMode': 'none', 'deleteUnregistered': False})
        assert AutomationRule.from_dict(expression_rule).is_expression is True

    def test_malformed_numbers(self):
        """Non-numeric limits are rejected with the field name"""
        with pytest.raises(RuleValidationError) as exc:
            AutomationRule.from_dict({'name': 'bad', 'uploadLimitKiB': 'fast'})
        assert 'uploadLimitKiB' in exc.value.details['Problem']

    def test_not_an_object(self):
        with pytest.raises(RuleValidationError):
            AutomationRule.from_dict(['not', 'a', 'rule'])

    def test_round_trip(self, expression_rule):
        """to_dict output parses back to the same rule"""
        rule = AutomationRule.from_dict(expression_rule, instance_id=2)
        again = AutomationRule.from_dict(rule.to_dict())

        assert again.to_dict() == rule.to_dict()
        assert again.instance_id == 2

    def test_sort_key(self):
        """Rules order by sortOrder then id"""
        rules = [
            AutomationRule(id=3, sort_order=1), AutomationRule(id=1, sort_order=2), AutomationRule(id=2, sort_order=1)
        ]
        assert [r.id for r in sorted(rules, key=AutomationRule.sort_key)] == [2, 3, 1]


class TestRuleScope:
    """Test scope parsing"""

    def test_defaults_to_wildcard(self):
        scope = RuleScope.from_dict({})
        assert scope.is_wildcard is True
        assert scope.tag_match_mode == 'any'

    def test_tracker_tokens(self):
        """Commas, semicolons and pipes all separate tracker tokens"""
        scope = RuleScope.from_dict({'trackerPattern': 'A.org; b.net | c.com,'})
        assert scope.tracker_tokens == ['a.org', 'b.net', 'c.com']

    def test_tracker_domains_list(self):
        """trackerDomains is accepted as a list"""
        scope = RuleScope.from_dict({'trackerDomains': ['a.org', 'b.net'], 'tagMatchMode': 'ALL',
                                     'tags': 'x, y'})

        assert scope.tracker_pattern == 'a.org,b.net'
        assert scope.tag_match_mode == 'all'
        assert scope.tags == ['x', 'y']


class TestCondition:
    """Test condition tree parsing"""

    def test_group(self):
        cond = Condition.from_dict({
            'operator': 'and',
            'conditions': [
                {'field': 'ratio', 'operator': 'greater_than', 'value': 1},
                {'operator': 'OR', 'conditions': [{'field': 'CATEGORY', 'operator': 'EQUAL', 'value': 'tv'}]},
            ]
        })

        assert cond.is_group is True
        assert cond.operator == 'AND'
        assert cond.conditions[0].field == 'RATIO'
        assert cond.depth() == 3

    def test_leaf_to_dict(self):
        cond = Condition.from_dict({'field': 'SIZE', 'operator': 'BETWEEN', 'minValue': 1, 'maxValue': 5,
                                    'negate': True})
        assert cond.to_dict() == {
            'operator': 'BETWEEN', 'field': 'SIZE', 'value': '', 'minValue': 1, 'maxValue': 5, 'negate': True
        }

    def test_not_an_object(self):
        with pytest.raises(RuleValidationError):
            Condition.from_dict('RATIO > 1')

    def test_condition_expr_alias(self):
        """conditionExpr is accepted in place of condition"""
        actions = ExpressionActions.from_dict({
            'schemaVersion': '1',
            'pause': {'enabled': True, 'conditionExpr': {'field': 'STATE', 'operator': 'EQUAL', 'value': 'stalledUP'}}
        }, 'rule')

        assert actions.pause.condition.field == 'STATE'


# ============================================================================
# Snapshots
# ============================================================================

class TestTorrentSnapshot:
    """Test snapshots built from torrents/info"""

    def test_from_api(self, sample_torrent):
        snap = TorrentSnapshot.from_api(sample_torrent, is_unregistered=True)

        assert snap.tracker == 'tracker.example.com'
        assert snap.tags == ['hd', 'keep']
        assert snap.ratio == 2.0
        assert snap.is_unregistered is True
        assert snap.up_limit == -1
        assert snap.ratio_limit == -2

    def test_missing_fields(self):
        """Sparse dictionaries get defaults"""
        snap = TorrentSnapshot.from_api({'hash': 'x', 'up_limit': None})

        assert snap.up_limit == -1
        assert snap.seeding_time_limit == -2
        assert snap.tracker == ''
        assert snap.tags == []

    @pytest.mark.parametrize('state,paused,stalled', [
        ('pausedUP', True, False),
        ('stoppedDL', True, False),
        ('stalledDL', False, True),
        ('uploading', False, False),
    ])
    def test_state_flags(self, torrent_factory, state, paused, stalled):
        snap = TorrentSnapshot.from_api(torrent_factory('x', state=state))

        assert snap.is_paused is paused
        assert snap.is_stalled is stalled

    def test_preview_dict(self, sample_torrent):
        preview = TorrentSnapshot.from_api(sample_torrent).to_preview_dict()

        assert preview['seedingTime'] == 172800
        assert preview['tags'] == 'hd, keep'
        assert preview['isUnregistered'] is False


# ============================================================================
# Settings and activity
# ============================================================================

class TestReannounceSettings:
    """Test settings parsing"""

    def test_defaults(self):
        settings = ReannounceSettings.from_dict(None, instance_id=4)

        assert settings.instance_id == 4
        assert settings.enabled is False
        assert settings.initial_wait_seconds == 15
        assert settings.reannounce_interval_seconds == 7
        assert settings.max_age_seconds == 600
        assert settings.max_retries == 50

    def test_round_trip(self):
        data = ReannounceSettings.from_dict({
            'enabled': True, 'aggressive': True, 'trackers': 'a.org, b.net', 'excludeTrackers': True
        }, instance_id=1).to_dict()

        assert data['trackers'] == ['a.org', 'b.net']
        assert ReannounceSettings.from_dict(data).to_dict() == data

    @pytest.mark.parametrize('key,value', [('maxRetries', -1), ('initialWaitSeconds', 'soon')])
    def test_invalid(self, key, value):
        with pytest.raises(RuleValidationError):
            ReannounceSettings.from_dict({key: value})


class TestActivity:
    """Test activity records"""

    def test_automation_round_trip(self):
        created = datetime(2024, 6, 1, tzinfo=timezone.utc)
        record = AutomationActivity(
            instance_id=1, hash='abc', action=ActivityAction.DELETED_RATIO, outcome='success',
            rule_id=2, rule_name='cleanup', details={'ratio': 2.5}, created_at=created
        )

        again = AutomationActivity.from_dict(record.to_dict())

        assert again.to_dict() == record.to_dict()
        assert again.created_at == created

    def test_naive_times_are_utc(self):
        record = ReannounceActivity.from_dict({
            'instanceId': 1, 'hash': 'abc', 'outcome': ReannounceOutcome.SKIPPED,
            'timestamp': '2024-06-01T12:00:00'
        })
        assert record.timestamp.tzinfo == timezone.utc

    def test_default_timestamps(self):
        """New records are stamped with the current time"""
        assert ReannounceActivity(instance_id=1, hash='a', outcome='skipped').timestamp.tzinfo == timezone.utc
        assert AutomationActivity(instance_id=1, hash='a', action='x', outcome='y').created_at is not None
