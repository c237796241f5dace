"""
Data model for rules, torrent snapshots, settings and activity records

Wire format uses camelCase keys; Python attributes use snake_case.
Rule actions are a tagged variant: LegacyActions or ExpressionActions,
discriminated by a non-empty 'conditions.schemaVersion'.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from qbt_automations.errors import RuleValidationError
from qbt_automations.utils import extract_domain, parse_tags


class DeleteMode:
    """Delete mode constants"""
    NONE = "none"
    DELETE = "delete"
    DELETE_WITH_FILES = "deleteWithFiles"
    PRESERVE_CROSS_SEEDS = "deleteWithFilesPreserveCrossSeeds"

    @classmethod
    def all(cls) -> List[str]:
        """Get all valid delete modes"""
        return [cls.NONE, cls.DELETE, cls.DELETE_WITH_FILES, cls.PRESERVE_CROSS_SEEDS]


class TagMatchMode:
    """Tag scope match mode constants"""
    ANY = "any"
    ALL = "all"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.ANY, cls.ALL]


class TagActionMode:
    """Tag action mode constants"""
    ADD = "add"
    REMOVE = "remove"
    FULL = "full"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.ADD, cls.REMOVE, cls.FULL]


class ActivityAction:
    """Automation activity action constants"""
    DELETED_RATIO = "deleted_ratio"
    DELETED_SEEDING = "deleted_seeding"
    DELETED_UNREGISTERED = "deleted_unregistered"
    DELETED_CONDITION = "deleted_condition"
    DELETE_FAILED = "delete_failed"
    LIMIT_FAILED = "limit_failed"
    TAGS_CHANGED = "tags_changed"


class ActivityOutcome:
    """Automation activity outcome constants"""
    SUCCESS = "success"
    FAILED = "failed"


class ReannounceOutcome:
    """Reannounce activity outcome constants"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


def _opt_int(value: Any, field: str, rule_name: str) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RuleValidationError(rule_name, f"'{field}' must be an integer, got {value!r}")


def _opt_float(value: Any, field: str, rule_name: str) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise RuleValidationError(rule_name, f"'{field}' must be a number, got {value!r}")


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return parse_tags(value)
    return [str(v).strip() for v in value if str(v).strip()]


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================================
# Rule scope and conditions
# ============================================================================

class RuleScope:
    """Tracker/category/tag filter that decides which torrents a rule can touch"""

    WILDCARD = '*'
    SEPARATORS = (',', ';', '|')

    def __init__(self, tracker_pattern: str = WILDCARD, categories: Optional[List[str]] = None,
                 tags: Optional[List[str]] = None, tag_match_mode: str = TagMatchMode.ANY):
        self.tracker_pattern = (tracker_pattern or '').strip()
        self.categories = list(categories or [])
        self.tags = list(tags or [])
        self.tag_match_mode = tag_match_mode or TagMatchMode.ANY

    @property
    def is_wildcard(self) -> bool:
        return self.tracker_pattern == self.WILDCARD

    @property
    def tracker_tokens(self) -> List[str]:
        """Lowercased domain tokens of the tracker pattern"""
        pattern = self.tracker_pattern
        for sep in self.SEPARATORS[1:]:
            pattern = pattern.replace(sep, ',')
        return [token.strip().lower() for token in pattern.split(',') if token.strip()]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RuleScope':
        pattern = data.get('trackerPattern')
        if pattern is None and data.get('trackerDomains'):
            pattern = data['trackerDomains']
        if isinstance(pattern, (list, tuple)):
            pattern = ','.join(str(p) for p in pattern)
        if pattern is None:
            pattern = cls.WILDCARD

        return cls(
            tracker_pattern=str(pattern),
            categories=_str_list(data.get('categories')),
            tags=_str_list(data.get('tags')),
            tag_match_mode=(data.get('tagMatchMode') or TagMatchMode.ANY).lower()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trackerPattern': self.tracker_pattern,
            'categories': list(self.categories),
            'tags': list(self.tags),
            'tagMatchMode': self.tag_match_mode,
        }


class Condition:
    """
    Node of a structured condition tree

    Group nodes use operator AND/OR with child conditions; leaf nodes
    compare a torrent field against value (or minValue/maxValue for BETWEEN).
    """

    GROUP_OPERATORS = ('AND', 'OR')

    def __init__(self, field: Optional[str] = None, operator: str = '', value: Any = '',
                 min_value: Optional[float] = None, max_value: Optional[float] = None,
                 regex: bool = False, negate: bool = False,
                 conditions: Optional[List['Condition']] = None):
        self.field = (field or '').upper() or None
        self.operator = (operator or '').upper()
        self.value = '' if value is None else value
        self.min_value = min_value
        self.max_value = max_value
        self.regex = bool(regex)
        self.negate = bool(negate)
        self.conditions = list(conditions or [])
        self._compiled = None

    @property
    def is_group(self) -> bool:
        return self.operator in self.GROUP_OPERATORS

    def depth(self) -> int:
        """Depth of the tree rooted here (a leaf has depth 1)"""
        if not self.conditions:
            return 1
        return 1 + max(child.depth() for child in self.conditions)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['Condition']:
        if data is None:
            return None
        if not isinstance(data, dict):
            raise RuleValidationError('<condition>', f"condition must be an object, got {type(data).__name__}")

        children = [cls.from_dict(child) for child in data.get('conditions') or []]
        return cls(
            field=data.get('field'),
            operator=data.get('operator', ''),
            value=data.get('value', ''),
            min_value=data.get('minValue'),
            max_value=data.get('maxValue'),
            regex=data.get('regex', False),
            negate=data.get('negate', False),
            conditions=[c for c in children if c is not None]
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'operator': self.operator}
        if self.field:
            data['field'] = self.field
        if self.is_group:
            data['conditions'] = [child.to_dict() for child in self.conditions]
        else:
            data['value'] = self.value
            if self.min_value is not None:
                data['minValue'] = self.min_value
            if self.max_value is not None:
                data['maxValue'] = self.max_value
            if self.regex:
                data['regex'] = True
        if self.negate:
            data['negate'] = True
        return data


# ============================================================================
# Rule actions (tagged variant)
# ============================================================================

def _condition_of(data: Dict[str, Any]) -> Optional[Condition]:
    raw = data.get('condition', data.get('conditionExpr'))
    return Condition.from_dict(raw)


class SpeedLimitAction:
    """Expression sub-action: set upload/download limits"""

    kind = 'speedLimits'

    def __init__(self, enabled: bool = False, upload_kib: Optional[int] = None,
                 download_kib: Optional[int] = None, condition: Optional[Condition] = None):
        self.enabled = enabled
        self.upload_kib = upload_kib
        self.download_kib = download_kib
        self.condition = condition

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_name: str) -> 'SpeedLimitAction':
        return cls(
            enabled=bool(data.get('enabled', False)),
            upload_kib=_opt_int(data.get('uploadKiB'), 'speedLimits.uploadKiB', rule_name),
            download_kib=_opt_int(data.get('downloadKiB'), 'speedLimits.downloadKiB', rule_name),
            condition=_condition_of(data)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'uploadKiB': self.upload_kib,
            'downloadKiB': self.download_kib,
            'condition': self.condition.to_dict() if self.condition else None,
        }


class PauseAction:
    """Expression sub-action: pause the torrent"""

    kind = 'pause'

    def __init__(self, enabled: bool = False, condition: Optional[Condition] = None):
        self.enabled = enabled
        self.condition = condition

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_name: str) -> 'PauseAction':
        return cls(enabled=bool(data.get('enabled', False)), condition=_condition_of(data))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'condition': self.condition.to_dict() if self.condition else None,
        }


class DeleteAction:
    """Expression sub-action: delete the torrent"""

    kind = 'delete'

    def __init__(self, enabled: bool = False, mode: str = DeleteMode.DELETE,
                 condition: Optional[Condition] = None):
        self.enabled = enabled
        self.mode = mode or DeleteMode.DELETE
        self.condition = condition

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_name: str) -> 'DeleteAction':
        return cls(
            enabled=bool(data.get('enabled', False)),
            mode=data.get('mode') or DeleteMode.DELETE,
            condition=_condition_of(data)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'mode': self.mode,
            'condition': self.condition.to_dict() if self.condition else None,
        }


class TagAction:
    """Expression sub-action: add, remove or fully manage tags"""

    kind = 'tag'

    def __init__(self, enabled: bool = False, mode: str = TagActionMode.FULL,
                 tags: Optional[List[str]] = None, condition: Optional[Condition] = None):
        self.enabled = enabled
        self.mode = mode or TagActionMode.FULL
        self.tags = list(tags or [])
        self.condition = condition

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_name: str) -> 'TagAction':
        return cls(
            enabled=bool(data.get('enabled', False)),
            mode=(data.get('mode') or TagActionMode.FULL).lower(),
            tags=_str_list(data.get('tags')),
            condition=_condition_of(data)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'mode': self.mode,
            'tags': list(self.tags),
            'condition': self.condition.to_dict() if self.condition else None,
        }


class LegacyActions:
    """Fixed-field action shape: limits plus a single delete mode"""

    FIELDS = (
        'uploadLimitKiB', 'downloadLimitKiB', 'ratioLimit', 'seedingTimeLimitMinutes',
        'deleteMode', 'deleteUnregistered', 'deleteUnregisteredMinAge'
    )

    def __init__(self, upload_limit_kib: Optional[int] = None, download_limit_kib: Optional[int] = None,
                 ratio_limit: Optional[float] = None, seeding_time_limit_minutes: Optional[int] = None,
                 delete_mode: str = DeleteMode.NONE, delete_unregistered: bool = False,
                 delete_unregistered_min_age: Optional[int] = None):
        self.upload_limit_kib = upload_limit_kib
        self.download_limit_kib = download_limit_kib
        self.ratio_limit = ratio_limit
        self.seeding_time_limit_minutes = seeding_time_limit_minutes
        self.delete_mode = delete_mode or DeleteMode.NONE
        self.delete_unregistered = bool(delete_unregistered)
        self.delete_unregistered_min_age = delete_unregistered_min_age

    @classmethod
    def has_fields(cls, data: Dict[str, Any]) -> bool:
        """True if any legacy field carries a meaningful value"""
        for key in cls.FIELDS:
            value = data.get(key)
            if value in (None, '', False) or (key == 'deleteMode' and value == DeleteMode.NONE):
                continue
            return True
        return False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_name: str) -> 'LegacyActions':
        return cls(
            upload_limit_kib=_opt_int(data.get('uploadLimitKiB'), 'uploadLimitKiB', rule_name),
            download_limit_kib=_opt_int(data.get('downloadLimitKiB'), 'downloadLimitKiB', rule_name),
            ratio_limit=_opt_float(data.get('ratioLimit'), 'ratioLimit', rule_name),
            seeding_time_limit_minutes=_opt_int(
                data.get('seedingTimeLimitMinutes'), 'seedingTimeLimitMinutes', rule_name
            ),
            delete_mode=data.get('deleteMode') or DeleteMode.NONE,
            delete_unregistered=bool(data.get('deleteUnregistered', False)),
            delete_unregistered_min_age=_opt_int(
                data.get('deleteUnregisteredMinAge'), 'deleteUnregisteredMinAge', rule_name
            )
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'uploadLimitKiB': self.upload_limit_kib,
            'downloadLimitKiB': self.download_limit_kib,
            'ratioLimit': self.ratio_limit,
            'seedingTimeLimitMinutes': self.seeding_time_limit_minutes,
            'deleteMode': self.delete_mode,
            'deleteUnregistered': self.delete_unregistered,
            'deleteUnregisteredMinAge': self.delete_unregistered_min_age,
        }


class ExpressionActions:
    """Structured action shape: independently enabled sub-actions with their own conditions"""

    def __init__(self, schema_version: str = '1', speed_limits: Optional[SpeedLimitAction] = None,
                 pause: Optional[PauseAction] = None, delete: Optional[DeleteAction] = None,
                 tag: Optional[TagAction] = None):
        self.schema_version = str(schema_version)
        self.speed_limits = speed_limits
        self.pause = pause
        self.delete = delete
        self.tag = tag

    def sub_actions(self) -> list:
        """Sub-actions in evaluation order"""
        return [a for a in (self.speed_limits, self.pause, self.delete, self.tag) if a is not None]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], rule_name: str) -> 'ExpressionActions':
        def sub(key, action_cls):
            raw = data.get(key)
            if raw is None:
                return None
            if not isinstance(raw, dict):
                raise RuleValidationError(rule_name, f"'{key}' must be an object")
            return action_cls.from_dict(raw, rule_name)

        return cls(
            schema_version=data.get('schemaVersion'),
            speed_limits=sub('speedLimits', SpeedLimitAction),
            pause=sub('pause', PauseAction),
            delete=sub('delete', DeleteAction),
            tag=sub('tag', TagAction)
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {'schemaVersion': self.schema_version}
        for action in self.sub_actions():
            data[action.kind] = action.to_dict()
        return data


class AutomationRule:
    """A prioritized automation rule owned by one instance"""

    def __init__(self, id: Optional[int] = None, instance_id: Optional[int] = None, name: str = '',
                 enabled: bool = True, sort_order: int = 0, scope: Optional[RuleScope] = None,
                 actions=None, created_at: Optional[datetime] = None,
                 updated_at: Optional[datetime] = None):
        self.id = id
        self.instance_id = instance_id
        self.name = name
        self.enabled = enabled
        self.sort_order = sort_order
        self.scope = scope or RuleScope()
        self.actions = actions if actions is not None else LegacyActions()
        self.created_at = created_at
        self.updated_at = updated_at

    @property
    def is_expression(self) -> bool:
        return isinstance(self.actions, ExpressionActions)

    def sort_key(self):
        """Evaluation priority: sortOrder ascending, ties by id ascending"""
        return (self.sort_order, self.id if self.id is not None else 0)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], instance_id: Optional[int] = None) -> 'AutomationRule':
        """
        Build a rule from its wire representation

        Raises:
            RuleValidationError: If the payload is malformed or mixes both action shapes
        """
        if not isinstance(data, dict):
            raise RuleValidationError('<unnamed>', "rule must be an object")

        name = str(data.get('name') or '').strip()
        label = name or '<unnamed>'

        conditions = data.get('conditions')
        if isinstance(conditions, dict) and str(conditions.get('schemaVersion') or '').strip():
            if LegacyActions.has_fields(data):
                raise RuleValidationError(label, "rule cannot combine legacy fields with expression conditions")
            actions = ExpressionActions.from_dict(conditions, label)
        else:
            actions = LegacyActions.from_dict(data, label)

        return cls(
            id=_opt_int(data.get('id'), 'id', label),
            instance_id=instance_id if instance_id is not None else _opt_int(data.get('instanceId'), 'instanceId', label),
            name=name,
            enabled=bool(data.get('enabled', True)),
            sort_order=_opt_int(data.get('sortOrder'), 'sortOrder', label) or 0,
            scope=RuleScope.from_dict(data),
            actions=actions,
            created_at=_parse_time(data.get('createdAt')),
            updated_at=_parse_time(data.get('updatedAt'))
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'instanceId': self.instance_id,
            'name': self.name,
            'enabled': self.enabled,
            'sortOrder': self.sort_order,
        }
        data.update(self.scope.to_dict())
        if self.is_expression:
            data['conditions'] = self.actions.to_dict()
        else:
            data.update(self.actions.to_dict())
        data['createdAt'] = _iso(self.created_at)
        data['updatedAt'] = _iso(self.updated_at)
        return data

    def __repr__(self) -> str:
        kind = 'expression' if self.is_expression else 'legacy'
        return f"<AutomationRule id={self.id} name={self.name!r} order={self.sort_order} {kind}>"


# ============================================================================
# Torrent snapshot
# ============================================================================

class TorrentSnapshot:
    """Read-only view of one torrent, taken once per scan"""

    PAUSED_PREFIXES = ('paused', 'stopped')
    STALLED_STATES = ('stalledDL', 'stalledUP')

    def __init__(self, hash: str, name: str = '', tracker: str = '', tracker_url: str = '',
                 category: str = '', tags: Optional[List[str]] = None, size: int = 0,
                 ratio: float = 0.0, progress: float = 0.0, seeding_time: int = 0,
                 added_on: int = 0, completion_on: int = 0, last_activity: int = 0,
                 content_path: str = '', save_path: str = '', state: str = '',
                 up_limit: int = -1, dl_limit: int = -1, ratio_limit: float = -2,
                 seeding_time_limit: int = -2, num_seeds: int = 0, num_leechs: int = 0,
                 private: bool = False, is_unregistered: bool = False):
        self.hash = hash
        self.name = name
        self.tracker = tracker
        self.tracker_url = tracker_url
        self.category = category or ''
        self.tags = list(tags or [])
        self.size = size
        self.ratio = ratio
        self.progress = progress
        self.seeding_time = seeding_time
        self.added_on = added_on
        self.completion_on = completion_on
        self.last_activity = last_activity
        self.content_path = content_path or ''
        self.save_path = save_path or ''
        self.state = state or ''
        self.up_limit = up_limit
        self.dl_limit = dl_limit
        self.ratio_limit = ratio_limit
        self.seeding_time_limit = seeding_time_limit
        self.num_seeds = num_seeds
        self.num_leechs = num_leechs
        self.private = private
        self.is_unregistered = is_unregistered

    @classmethod
    def from_api(cls, torrent: Dict[str, Any], is_unregistered: bool = False) -> 'TorrentSnapshot':
        """Build a snapshot from a qBittorrent torrents/info dictionary"""
        tracker_url = torrent.get('tracker') or ''
        return cls(
            hash=torrent.get('hash', ''),
            name=torrent.get('name', ''),
            tracker=extract_domain(tracker_url),
            tracker_url=tracker_url,
            category=torrent.get('category') or '',
            tags=parse_tags(torrent.get('tags', '')),
            size=int(torrent.get('size') or 0),
            ratio=float(torrent.get('ratio') or 0.0),
            progress=float(torrent.get('progress') or 0.0),
            seeding_time=int(torrent.get('seeding_time') or 0),
            added_on=int(torrent.get('added_on') or 0),
            completion_on=int(torrent.get('completion_on') or 0),
            last_activity=int(torrent.get('last_activity') or 0),
            content_path=torrent.get('content_path') or '',
            save_path=torrent.get('save_path') or '',
            state=torrent.get('state') or '',
            up_limit=int(torrent.get('up_limit', -1) if torrent.get('up_limit') is not None else -1),
            dl_limit=int(torrent.get('dl_limit', -1) if torrent.get('dl_limit') is not None else -1),
            ratio_limit=float(torrent.get('ratio_limit', -2) if torrent.get('ratio_limit') is not None else -2),
            seeding_time_limit=int(
                torrent.get('seeding_time_limit', -2) if torrent.get('seeding_time_limit') is not None else -2
            ),
            num_seeds=int(torrent.get('num_seeds') or 0),
            num_leechs=int(torrent.get('num_leechs') or 0),
            private=bool(torrent.get('private') or torrent.get('is_private') or False),
            is_unregistered=is_unregistered
        )

    @property
    def is_paused(self) -> bool:
        return self.state.startswith(self.PAUSED_PREFIXES)

    @property
    def is_stalled(self) -> bool:
        return self.state in self.STALLED_STATES

    def to_preview_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'hash': self.hash,
            'size': self.size,
            'ratio': self.ratio,
            'seedingTime': self.seeding_time,
            'tracker': self.tracker,
            'category': self.category,
            'tags': ', '.join(self.tags),
            'state': self.state,
            'isUnregistered': self.is_unregistered,
        }

    def __repr__(self) -> str:
        return f"<TorrentSnapshot {self.hash[:8]} {self.name!r}>"


# ============================================================================
# Settings and activity records
# ============================================================================

class ReannounceSettings:
    """Per-instance reannounce monitoring settings"""

    DEFAULTS = {
        'enabled': False,
        'initialWaitSeconds': 15,
        'reannounceIntervalSeconds': 7,
        'maxAgeSeconds': 600,
        'maxRetries': 50,
        'aggressive': False,
        'monitorAll': False,
        'categories': [],
        'tags': [],
        'trackers': [],
        'excludeCategories': False,
        'excludeTags': False,
        'excludeTrackers': False,
    }

    def __init__(self, instance_id: Optional[int] = None, enabled: bool = False,
                 initial_wait_seconds: int = 15, reannounce_interval_seconds: int = 7,
                 max_age_seconds: int = 600, max_retries: int = 50, aggressive: bool = False,
                 monitor_all: bool = False, categories: Optional[List[str]] = None,
                 tags: Optional[List[str]] = None, trackers: Optional[List[str]] = None,
                 exclude_categories: bool = False, exclude_tags: bool = False,
                 exclude_trackers: bool = False, updated_at: Optional[datetime] = None):
        self.instance_id = instance_id
        self.enabled = enabled
        self.initial_wait_seconds = initial_wait_seconds
        self.reannounce_interval_seconds = reannounce_interval_seconds
        self.max_age_seconds = max_age_seconds
        self.max_retries = max_retries
        self.aggressive = aggressive
        self.monitor_all = monitor_all
        self.categories = list(categories or [])
        self.tags = list(tags or [])
        self.trackers = list(trackers or [])
        self.exclude_categories = exclude_categories
        self.exclude_tags = exclude_tags
        self.exclude_trackers = exclude_trackers
        self.updated_at = updated_at

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], instance_id: Optional[int] = None) -> 'ReannounceSettings':
        """
        Build settings, falling back to defaults for missing keys

        Raises:
            RuleValidationError: If a numeric field is malformed or negative
        """
        merged = dict(cls.DEFAULTS)
        merged.update({k: v for k, v in (data or {}).items() if v is not None})
        label = 'reannounce settings'

        numbers = {}
        for key in ('initialWaitSeconds', 'reannounceIntervalSeconds', 'maxAgeSeconds', 'maxRetries'):
            value = _opt_int(merged.get(key), key, label)
            if value is None or value < 0:
                raise RuleValidationError(label, f"'{key}' must be a non-negative integer")
            numbers[key] = value

        return cls(
            instance_id=instance_id if instance_id is not None else merged.get('instanceId'),
            enabled=bool(merged['enabled']),
            initial_wait_seconds=numbers['initialWaitSeconds'],
            reannounce_interval_seconds=numbers['reannounceIntervalSeconds'],
            max_age_seconds=numbers['maxAgeSeconds'],
            max_retries=numbers['maxRetries'],
            aggressive=bool(merged['aggressive']),
            monitor_all=bool(merged['monitorAll']),
            categories=_str_list(merged['categories']),
            tags=_str_list(merged['tags']),
            trackers=_str_list(merged['trackers']),
            exclude_categories=bool(merged['excludeCategories']),
            exclude_tags=bool(merged['excludeTags']),
            exclude_trackers=bool(merged['excludeTrackers']),
            updated_at=_parse_time(merged.get('updatedAt'))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'instanceId': self.instance_id,
            'enabled': self.enabled,
            'initialWaitSeconds': self.initial_wait_seconds,
            'reannounceIntervalSeconds': self.reannounce_interval_seconds,
            'maxAgeSeconds': self.max_age_seconds,
            'maxRetries': self.max_retries,
            'aggressive': self.aggressive,
            'monitorAll': self.monitor_all,
            'categories': list(self.categories),
            'tags': list(self.tags),
            'trackers': list(self.trackers),
            'excludeCategories': self.exclude_categories,
            'excludeTags': self.exclude_tags,
            'excludeTrackers': self.exclude_trackers,
            'updatedAt': _iso(self.updated_at),
        }


class AutomationActivity:
    """Immutable record of one action attempt by the rule engine"""

    def __init__(self, instance_id: int, hash: str, action: str, outcome: str,
                 torrent_name: str = '', tracker_domain: str = '', rule_id: Optional[int] = None,
                 rule_name: str = '', reason: str = '', details: Optional[Dict[str, Any]] = None,
                 created_at: Optional[datetime] = None, id: Optional[int] = None):
        self.id = id
        self.instance_id = instance_id
        self.created_at = created_at or datetime.now(timezone.utc)
        self.hash = hash
        self.torrent_name = torrent_name
        self.tracker_domain = tracker_domain
        self.rule_id = rule_id
        self.rule_name = rule_name
        self.action = action
        self.outcome = outcome
        self.reason = reason or ''
        self.details = dict(details or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AutomationActivity':
        return cls(
            id=data.get('id'),
            instance_id=data['instanceId'],
            created_at=_parse_time(data.get('createdAt')),
            hash=data.get('hash', ''),
            torrent_name=data.get('torrentName', ''),
            tracker_domain=data.get('trackerDomain', ''),
            rule_id=data.get('ruleId'),
            rule_name=data.get('ruleName', ''),
            action=data['action'],
            outcome=data['outcome'],
            reason=data.get('reason') or '',
            details=data.get('details') or {}
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'instanceId': self.instance_id,
            'createdAt': _iso(self.created_at),
            'hash': self.hash,
            'torrentName': self.torrent_name,
            'trackerDomain': self.tracker_domain,
            'ruleId': self.rule_id,
            'ruleName': self.rule_name,
            'action': self.action,
            'outcome': self.outcome,
            'reason': self.reason or None,
            'details': self.details,
        }


class ReannounceActivity:
    """Immutable record of one reannounce attempt or skip"""

    def __init__(self, instance_id: int, hash: str, outcome: str, reason: str = '',
                 torrent_name: str = '', trackers: str = '', timestamp: Optional[datetime] = None,
                 id: Optional[int] = None):
        self.id = id
        self.instance_id = instance_id
        self.hash = hash
        self.torrent_name = torrent_name
        self.trackers = trackers
        self.timestamp = timestamp or datetime.now(timezone.utc)
        self.outcome = outcome
        self.reason = reason

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReannounceActivity':
        return cls(
            id=data.get('id'),
            instance_id=data['instanceId'],
            hash=data.get('hash', ''),
            torrent_name=data.get('torrentName', ''),
            trackers=data.get('trackers', ''),
            timestamp=_parse_time(data.get('timestamp')),
            outcome=data['outcome'],
            reason=data.get('reason', '')
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'instanceId': self.instance_id,
            'hash': self.hash,
            'torrentName': self.torrent_name,
            'trackers': self.trackers,
            'timestamp': _iso(self.timestamp),
            'outcome': self.outcome,
            'reason': self.reason,
        }
