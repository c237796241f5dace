"""
Action composition across the rules that fire for one torrent

Rules are added in priority order. Conflicts resolve as:
- Delete: first wins, terminal, discards everything else
- Speed and share limits: last wins per field
- Pause: OR
- Tags: last action per tag wins; 'full' drops earlier adds outside its set

No-op actions (limit already set, already paused, tag already present or
absent) are filtered out in result().
"""

from typing import Any, Dict, List, Optional

from qbt_automations.conditions import DeleteIntent, LegacyDecision
from qbt_automations.models import (
    ActivityAction, AutomationRule, DeleteAction, PauseAction, SpeedLimitAction,
    TagAction, TagActionMode, TorrentSnapshot
)
from qbt_automations.utils import kib_to_bytes

TAG_ADD = 'add'
TAG_REMOVE = 'remove'


def _normalize_limit(limit: Optional[int]) -> int:
    """qBittorrent reports unlimited as 0 or -1"""
    if limit is None or limit <= 0:
        return -1
    return int(limit)


class EffectiveActions:
    """The single action set to execute on one torrent"""

    def __init__(self, snapshot: TorrentSnapshot):
        self.snapshot = snapshot
        self.delete: Optional[DeleteIntent] = None

        self.upload_kib: Optional[int] = None
        self.upload_rule: Optional[AutomationRule] = None
        self.download_kib: Optional[int] = None
        self.download_rule: Optional[AutomationRule] = None

        self.share_ratio: Optional[float] = None
        self.share_seeding_minutes: Optional[int] = None
        self.share_rule: Optional[AutomationRule] = None

        self.pause = False
        self.pause_rule: Optional[AutomationRule] = None

        self.tags_add: List[str] = []
        self.tags_remove: List[str] = []
        self.tag_added_counts: Dict[str, int] = {}
        self.tag_removed_counts: Dict[str, int] = {}
        self.tag_rule: Optional[AutomationRule] = None

        self.rules: List[AutomationRule] = []

    @property
    def hash(self) -> str:
        return self.snapshot.hash

    def is_empty(self) -> bool:
        return (
            self.delete is None
            and self.upload_kib is None
            and self.download_kib is None
            and self.share_ratio is None
            and self.share_seeding_minutes is None
            and not self.pause
            and not self.tags_add
            and not self.tags_remove
        )

    def describe(self) -> List[Dict[str, Any]]:
        """Intended actions, for previews and dry-run logging"""
        actions = []
        if self.delete is not None:
            actions.append({
                'type': 'delete',
                'action': self.delete.action,
                'mode': self.delete.mode,
                'reason': self.delete.reason,
                'rule': self.delete.rule.name if self.delete.rule else None,
            })
            return actions

        if self.upload_kib is not None:
            actions.append({'type': 'upload_limit', 'limitKiB': self.upload_kib, 'rule': self.upload_rule.name})
        if self.download_kib is not None:
            actions.append({'type': 'download_limit', 'limitKiB': self.download_kib, 'rule': self.download_rule.name})
        if self.share_ratio is not None or self.share_seeding_minutes is not None:
            actions.append({
                'type': 'share_limits',
                'ratioLimit': self.share_ratio,
                'seedingTimeLimitMinutes': self.share_seeding_minutes,
                'rule': self.share_rule.name,
            })
        if self.pause:
            actions.append({'type': 'pause', 'rule': self.pause_rule.name})
        if self.tags_add or self.tags_remove:
            actions.append({
                'type': 'tags',
                'add': list(self.tags_add),
                'remove': list(self.tags_remove),
                'rule': self.tag_rule.name,
            })
        return actions

    def __repr__(self) -> str:
        kinds = [a['type'] for a in self.describe()]
        return f"<EffectiveActions {self.hash[:8]} {kinds}>"


class ActionComposer:
    """
    Accumulates fired actions for one torrent, in rule priority order

    Usage:
        composer = ActionComposer(snapshot)
        for rule in rules:
            if not composer.add(rule, triggered):
                break
        effective = composer.result()
    """

    def __init__(self, snapshot: TorrentSnapshot):
        self.snapshot = snapshot
        self._effective = EffectiveActions(snapshot)
        # lowercased tag -> (tag, op)
        self._tag_ops: Dict[str, tuple] = {}
        self._added_counts: Dict[str, int] = {}
        self._removed_counts: Dict[str, int] = {}
        self._done = False

    def add(self, rule: AutomationRule, triggered) -> bool:
        """
        Merge the fired actions of one rule

        Args:
            rule: The rule (already scope-matched)
            triggered: LegacyDecision for legacy rules, list of fired sub-actions for expression rules

        Returns:
            False once a delete has been composed (no further rules should be added)
        """
        if self._done:
            return False

        if isinstance(triggered, LegacyDecision):
            fired = triggered.triggered
            self._add_legacy(rule, triggered)
        else:
            fired = bool(triggered)
            self._add_expression(rule, triggered or [])

        if fired:
            self._effective.rules.append(rule)

        return not self._done

    def _add_legacy(self, rule: AutomationRule, decision: LegacyDecision):
        if decision.delete is not None:
            decision.delete.rule = rule
            self._set_delete(decision.delete)
            return

        effective = self._effective
        if decision.upload_kib is not None:
            effective.upload_kib, effective.upload_rule = decision.upload_kib, rule
        if decision.download_kib is not None:
            effective.download_kib, effective.download_rule = decision.download_kib, rule
        if decision.share_ratio is not None:
            effective.share_ratio, effective.share_rule = decision.share_ratio, rule
        if decision.share_seeding_minutes is not None:
            effective.share_seeding_minutes, effective.share_rule = decision.share_seeding_minutes, rule

    def _add_expression(self, rule: AutomationRule, fired: list):
        effective = self._effective

        for action in fired:
            if isinstance(action, DeleteAction):
                self._set_delete(DeleteIntent(
                    mode=action.mode,
                    action=ActivityAction.DELETED_CONDITION,
                    reason='condition matched',
                    details={'deleteMode': action.mode},
                    rule=rule
                ))
                return

            if isinstance(action, SpeedLimitAction):
                if action.upload_kib is not None:
                    effective.upload_kib, effective.upload_rule = action.upload_kib, rule
                if action.download_kib is not None:
                    effective.download_kib, effective.download_rule = action.download_kib, rule

            elif isinstance(action, PauseAction):
                if not effective.pause:
                    effective.pause, effective.pause_rule = True, rule

            elif isinstance(action, TagAction):
                self._add_tags(rule, action)

    def _add_tags(self, rule: AutomationRule, action: TagAction):
        wanted = {tag.lower(): tag for tag in action.tags}

        if action.mode == TagActionMode.FULL:
            for key, (tag, op) in list(self._tag_ops.items()):
                if op == TAG_ADD and key not in wanted:
                    del self._tag_ops[key]
                    self._added_counts.pop(key, None)

        op = TAG_REMOVE if action.mode == TagActionMode.REMOVE else TAG_ADD
        counts = self._removed_counts if op == TAG_REMOVE else self._added_counts
        for key, tag in wanted.items():
            self._tag_ops[key] = (tag, op)
            counts[key] = counts.get(key, 0) + 1

        self._effective.tag_rule = rule

    def _set_delete(self, intent: DeleteIntent):
        """A delete replaces anything composed so far and closes the composer"""
        rules = self._effective.rules
        self._effective = EffectiveActions(self.snapshot)
        self._effective.rules = rules
        self._effective.delete = intent
        self._tag_ops.clear()
        self._done = True

    def result(self) -> Optional[EffectiveActions]:
        """
        Final effective actions with no-ops removed

        Returns:
            EffectiveActions, or None if nothing would change the torrent
        """
        effective = self._effective
        snapshot = self.snapshot

        if effective.delete is not None:
            return effective

        if effective.upload_kib is not None and \
                kib_to_bytes(effective.upload_kib) == _normalize_limit(snapshot.up_limit):
            effective.upload_kib = None
        if effective.download_kib is not None and \
                kib_to_bytes(effective.download_kib) == _normalize_limit(snapshot.dl_limit):
            effective.download_kib = None

        ratio_same = effective.share_ratio is None or abs(effective.share_ratio - snapshot.ratio_limit) < 1e-6
        seeding_same = effective.share_seeding_minutes is None or \
            effective.share_seeding_minutes == snapshot.seeding_time_limit
        if ratio_same and seeding_same:
            effective.share_ratio = None
            effective.share_seeding_minutes = None

        if effective.pause and snapshot.is_paused:
            effective.pause = False

        current = {tag.lower(): tag for tag in snapshot.tags}
        effective.tags_add = []
        effective.tags_remove = []
        effective.tag_added_counts = {}
        effective.tag_removed_counts = {}
        for key, (tag, op) in self._tag_ops.items():
            if op == TAG_ADD and key not in current:
                effective.tags_add.append(tag)
                effective.tag_added_counts[tag] = self._added_counts.get(key, 1)
            elif op == TAG_REMOVE and key in current:
                # remove using the torrent's own spelling of the tag
                effective.tags_remove.append(current[key])
                effective.tag_removed_counts[current[key]] = self._removed_counts.get(key, 1)

        if effective.is_empty():
            return None
        return effective
