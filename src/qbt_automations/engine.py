"""
Rules engine - scans one instance and applies automation rules

A scan reads the torrent list once, composes one effective action set per
torrent from the rules that fire, then executes those actions through the
qBittorrent API and records the outcomes in the activity log.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from qbt_automations.composer import ActionComposer, EffectiveActions
from qbt_automations.conditions import (
    condition_uses_field, evaluate_expression, evaluate_legacy, validate_rule, LegacyDecision
)
from qbt_automations.crossseed import CrossSeedDecision, resolve
from qbt_automations.errors import RuleValidationError
from qbt_automations.matcher import rule_matches
from qbt_automations.models import (
    ActivityAction, ActivityOutcome, AutomationActivity, AutomationRule, DeleteMode, TorrentSnapshot
)
from qbt_automations.utils import format_bytes, kib_to_bytes

logger = logging.getLogger(__name__)


class ScanState:
    """Scan state constants"""
    IDLE = "idle"
    SCANNING = "scanning"
    MATCHING = "matching"
    COMPOSING = "composing"
    EXECUTING = "executing"
    LOGGED = "logged"


class RuleStats:
    """Statistics of one scan"""

    FIELDS = (
        'total_torrents', 'processed', 'rules_matched', 'actions_executed', 'actions_skipped',
        'actions_failed', 'deleted', 'invalid_rules', 'errors'
    )

    def __init__(self):
        self.total_torrents = 0
        self.processed = 0
        self.rules_matched = 0
        self.actions_executed = 0
        self.actions_skipped = 0
        self.actions_failed = 0
        self.deleted = 0
        self.invalid_rules = 0
        self.errors = 0

    def to_dict(self) -> Dict[str, int]:
        return {field: getattr(self, field) for field in self.FIELDS}

    def __repr__(self) -> str:
        return f"<RuleStats {self.to_dict()}>"


class RulesEngine:
    """
    Rule engine for one qBittorrent instance

    Only one scan runs at a time per instance; a second caller gets None back.
    Deletes that preserve cross-seeds are checked and executed under a
    per-instance lock against a fresh torrent listing.
    """

    def __init__(self, instance_id: int, api, rule_store, recorder, dry_run: bool = False,
                 max_workers: int = 4, clock=time.time):
        """
        Initialize engine

        Args:
            instance_id: Instance this engine works on
            api: QBittorrentAPI (or compatible) client for the instance
            rule_store: RuleStore providing the instance's rules
            recorder: ActivityRecorder for outcomes
            dry_run: Log intended actions without executing or recording them
            max_workers: Worker threads used to execute actions
            clock: Callable returning the current Unix time
        """
        self.instance_id = instance_id
        self.api = api
        self.rule_store = rule_store
        self.recorder = recorder
        self.dry_run = dry_run
        self.max_workers = max(1, int(max_workers))
        self.clock = clock

        self.state = ScanState.IDLE
        self.stats = RuleStats()
        self.last_run: Optional[Dict[str, Any]] = None

        self._scan_lock = threading.Lock()
        self._delete_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._deleted_hashes = set()

    # ========================================================================
    # Scan
    # ========================================================================

    def is_scanning(self) -> bool:
        return self._scan_lock.locked()

    def run(self, trigger: str = 'manual') -> Optional[RuleStats]:
        """
        Run one scan

        Args:
            trigger: What started the scan (e.g. 'scheduled', 'manual')

        Returns:
            RuleStats of the scan, or None if a scan was already running
        """
        if not self._scan_lock.acquire(blocking=False):
            logger.info(f"Instance {self.instance_id}: scan already running, skipping {trigger} trigger")
            return None

        started = datetime.now(timezone.utc)
        start_time = time.time()
        self.stats = RuleStats()
        self._deleted_hashes = set()

        try:
            self._scan(trigger)
        except Exception as e:
            self.stats.errors += 1
            logger.error(f"Instance {self.instance_id}: scan failed: {type(e).__name__}: {e}")
            logger.debug("Full stack trace:", exc_info=True)
        finally:
            self.state = ScanState.IDLE
            self.last_run = {
                'trigger': trigger,
                'startedAt': started.isoformat(),
                'duration': round(time.time() - start_time, 2),
                'dryRun': self.dry_run,
                'stats': self.stats.to_dict(),
            }
            self._scan_lock.release()

        return self.stats

    def _scan(self, trigger: str):
        self.state = ScanState.SCANNING
        mode = "DRY RUN" if self.dry_run else "LIVE"
        logger.info(f"Instance {self.instance_id}: starting {trigger} scan ({mode})")

        rules = self._load_rules()

        try:
            torrents = self.api.get_torrents()
        except Exception as e:
            self.stats.errors += 1
            logger.error(f"Instance {self.instance_id}: cannot read torrents, scan aborted: {e}")
            return

        self.stats.total_torrents = len(torrents)
        if not rules:
            logger.info(f"Instance {self.instance_id}: no enabled rules, nothing to do")
            return

        now = self.clock()
        self.state = ScanState.MATCHING
        snapshots = self._build_snapshots(torrents, rules)

        self.state = ScanState.COMPOSING
        plans = []
        for snapshot in snapshots:
            try:
                effective, matched = self._compose(snapshot, rules, now)
            except Exception as e:
                self.stats.errors += 1
                logger.error(f"Error evaluating torrent {snapshot.name}: {e}")
                continue

            self.stats.processed += 1
            self.stats.rules_matched += matched
            if effective is not None:
                plans.append(effective)

        self.state = ScanState.EXECUTING
        if plans:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = {pool.submit(self._execute, effective): effective for effective in plans}
                for future in as_completed(futures):
                    try:
                        future.result()
                    except Exception as e:
                        self._count('errors')
                        logger.error(f"Error executing actions on {futures[future].snapshot.name}: {e}")

        self.state = ScanState.LOGGED
        s = self.stats
        logger.info(
            f"Instance {self.instance_id}: scan complete - {s.processed}/{s.total_torrents} torrents, "
            f"{s.rules_matched} rule matches, {s.actions_executed} executed, {s.actions_skipped} skipped, "
            f"{s.actions_failed} failed, {s.deleted} deleted"
        )
        if s.invalid_rules:
            logger.warning(f"Instance {self.instance_id}: {s.invalid_rules} invalid rule(s) were skipped")

    def _load_rules(self) -> List[AutomationRule]:
        """Enabled rules in evaluation order, skipping invalid ones"""
        rules = []
        for rule in self.rule_store.list_rules(self.instance_id, enabled_only=True):
            try:
                validate_rule(rule)
            except RuleValidationError as e:
                self.stats.invalid_rules += 1
                logger.warning(f"Skipping invalid rule {rule.id} '{rule.name}': {e.details.get('Problem')}")
                continue
            rules.append(rule)

        rules.sort(key=lambda r: r.sort_key())
        logger.debug(f"Instance {self.instance_id}: loaded {len(rules)} rule(s)")
        return rules

    # ========================================================================
    # Matching & composition (pure)
    # ========================================================================

    @staticmethod
    def _needs_unregistered(rule: AutomationRule) -> bool:
        if not rule.is_expression:
            return rule.actions.delete_unregistered
        return any(
            condition_uses_field(action.condition, 'IS_UNREGISTERED')
            for action in rule.actions.sub_actions()
        )

    def _build_snapshots(self, torrents: List[Dict], rules: List[AutomationRule]) -> List[TorrentSnapshot]:
        """
        Build snapshots, checking tracker health only where a rule needs it
        """
        unregistered_rules = [rule for rule in rules if self._needs_unregistered(rule)]

        snapshots = []
        for torrent in torrents:
            snapshot = TorrentSnapshot.from_api(torrent)
            if unregistered_rules and any(rule_matches(rule, snapshot) for rule in unregistered_rules):
                try:
                    snapshot.is_unregistered = bool(self.api.is_unregistered(snapshot.hash))
                except Exception as e:
                    logger.warning(f"Cannot check tracker status of {snapshot.name}: {e}")
            snapshots.append(snapshot)
        return snapshots

    @staticmethod
    def _evaluate(rule: AutomationRule, snapshot: TorrentSnapshot, now: float):
        if rule.is_expression:
            return evaluate_expression(rule.actions, snapshot, now)
        return evaluate_legacy(rule.actions, snapshot, now)

    @staticmethod
    def _fired(triggered) -> bool:
        if isinstance(triggered, LegacyDecision):
            return triggered.triggered
        return bool(triggered)

    def _compose(self, snapshot: TorrentSnapshot, rules: List[AutomationRule],
                 now: float) -> Tuple[Optional[EffectiveActions], int]:
        """
        Compose the effective actions for one torrent

        Returns:
            (EffectiveActions or None, number of rules that fired)
        """
        composer = ActionComposer(snapshot)
        matched = 0

        for rule in rules:
            if not rule_matches(rule, snapshot):
                continue

            triggered = self._evaluate(rule, snapshot, now)
            if self._fired(triggered):
                matched += 1
                logger.debug(f"Rule '{rule.name}' fired for {snapshot.name}")

            if not composer.add(rule, triggered):
                break

        return composer.result(), matched

    def plan(self) -> List[Dict[str, Any]]:
        """
        Dry run of all enabled rules without executing anything

        Returns:
            List of {'hash', 'name', 'actions'} for torrents that would change
        """
        rules = self._load_rules()
        if not rules:
            return []

        torrents = self.api.get_torrents()
        now = self.clock()

        planned = []
        for snapshot in self._build_snapshots(torrents, rules):
            effective, _ = self._compose(snapshot, rules, now)
            if effective is not None:
                planned.append({'hash': snapshot.hash, 'name': snapshot.name, 'actions': effective.describe()})
        return planned

    def preview(self, rule: Union[AutomationRule, Dict[str, Any]], limit: int = 25,
                offset: int = 0) -> Dict[str, Any]:
        """
        Show which torrents a (possibly unsaved) rule would act on

        Args:
            rule: Rule or rule dictionary
            limit: Maximum number of examples
            offset: Number of matching torrents to skip

        Returns:
            {'totalMatches': int, 'examples': [torrent info with intended 'actions']}

        Raises:
            RuleValidationError: If the rule is invalid
        """
        if not isinstance(rule, AutomationRule):
            rule = AutomationRule.from_dict(rule, instance_id=self.instance_id)
        validate_rule(rule)

        torrents = self.api.get_torrents()
        now = self.clock()

        matches = []
        for snapshot in self._build_snapshots(torrents, [rule]):
            if not rule_matches(rule, snapshot):
                continue
            triggered = self._evaluate(rule, snapshot, now)
            if not self._fired(triggered):
                continue

            composer = ActionComposer(snapshot)
            composer.add(rule, triggered)
            effective = composer.result()
            matches.append((snapshot, effective.describe() if effective else []))

        matches.sort(key=lambda item: item[0].name.lower())
        limit = max(0, int(limit))
        offset = max(0, int(offset))

        examples = []
        for snapshot, actions in matches[offset:offset + limit]:
            example = snapshot.to_preview_dict()
            example['actions'] = actions
            examples.append(example)

        return {'totalMatches': len(matches), 'examples': examples}

    # ========================================================================
    # Execution
    # ========================================================================

    def _count(self, field: str, amount: int = 1):
        with self._stats_lock:
            setattr(self.stats, field, getattr(self.stats, field) + amount)

    def _execute(self, effective: EffectiveActions):
        """Execute one torrent's effective actions"""
        snapshot = effective.snapshot

        if self.dry_run:
            for action in effective.describe():
                logger.info(f"[DRY RUN] Would apply {action['type']} to {snapshot.name}: {action}")
                self._count('actions_skipped')
            return

        if effective.delete is not None:
            self._execute_delete(effective)
            return

        if effective.upload_kib is not None:
            self._execute_speed_limit(effective, 'upload', effective.upload_kib, effective.upload_rule)
        if effective.download_kib is not None:
            self._execute_speed_limit(effective, 'download', effective.download_kib, effective.download_rule)
        if effective.share_ratio is not None or effective.share_seeding_minutes is not None:
            self._execute_share_limits(effective)
        if effective.pause:
            self._execute_pause(effective)
        if effective.tags_add or effective.tags_remove:
            self._execute_tags(effective)

    def _execute_speed_limit(self, effective: EffectiveActions, direction: str, kib: int, rule: AutomationRule):
        snapshot = effective.snapshot
        limit = kib_to_bytes(kib)
        setter = self.api.set_upload_limit if direction == 'upload' else self.api.set_download_limit

        try:
            setter([snapshot.hash], limit)
        except Exception as e:
            self._count('actions_failed')
            logger.error(f"Failed to set {direction} limit on {snapshot.name}: {e}")
            self._record(snapshot, rule, ActivityAction.LIMIT_FAILED, ActivityOutcome.FAILED,
                         reason=f"{direction} limit failed: {e}",
                         details={'limitKiB': kib, 'count': 1, 'type': direction})
            return

        self._count('actions_executed')
        shown = format_bytes(limit) + '/s' if limit > 0 else 'unlimited'
        logger.info(f"Set {direction} limit of {snapshot.name} to {shown} (rule '{rule.name}')")

    def _execute_share_limits(self, effective: EffectiveActions):
        snapshot = effective.snapshot
        rule = effective.share_rule
        ratio = effective.share_ratio if effective.share_ratio is not None else snapshot.ratio_limit
        minutes = effective.share_seeding_minutes \
            if effective.share_seeding_minutes is not None else snapshot.seeding_time_limit

        try:
            self.api.set_share_limits([snapshot.hash], ratio_limit=ratio, seeding_time_limit=minutes)
        except Exception as e:
            self._count('actions_failed')
            logger.error(f"Failed to set share limits on {snapshot.name}: {e}")
            self._record(snapshot, rule, ActivityAction.LIMIT_FAILED, ActivityOutcome.FAILED,
                         reason=f"share limit failed: {e}",
                         details={'ratioLimit': ratio, 'seedingTimeLimitMinutes': minutes, 'count': 1, 'type': 'share'})
            return

        self._count('actions_executed')
        logger.info(f"Set share limits of {snapshot.name} to ratio {ratio}, {minutes} min (rule '{rule.name}')")

    def _execute_pause(self, effective: EffectiveActions):
        snapshot = effective.snapshot
        try:
            self.api.stop_torrents([snapshot.hash])
        except Exception as e:
            self._count('actions_failed')
            logger.error(f"Failed to pause {snapshot.name}: {e}")
            return

        self._count('actions_executed')
        logger.info(f"Paused {snapshot.name} (rule '{effective.pause_rule.name}')")

    def _execute_tags(self, effective: EffectiveActions):
        """Apply tag changes; one tags_changed record reports what was applied"""
        snapshot = effective.snapshot
        details = {'added': {}, 'removed': {}}
        errors = []

        if effective.tags_add:
            try:
                self.api.add_tags([snapshot.hash], effective.tags_add)
                details['added'] = dict(effective.tag_added_counts)
            except Exception as e:
                errors.append(f"add failed: {e}")
                details['addFailed'] = list(effective.tags_add)

        if effective.tags_remove:
            try:
                self.api.remove_tags([snapshot.hash], effective.tags_remove)
                details['removed'] = dict(effective.tag_removed_counts)
            except Exception as e:
                errors.append(f"remove failed: {e}")
                details['removeFailed'] = list(effective.tags_remove)

        if errors:
            self._count('actions_failed')
            logger.error(f"Tag update on {snapshot.name} failed: {'; '.join(errors)}")
            self._record(snapshot, effective.tag_rule, ActivityAction.TAGS_CHANGED, ActivityOutcome.FAILED,
                         reason='; '.join(errors), details=details)
            return

        self._count('actions_executed')
        logger.info(
            f"Tags of {snapshot.name}: +{effective.tags_add} -{effective.tags_remove} "
            f"(rule '{effective.tag_rule.name}')"
        )
        self._record(snapshot, effective.tag_rule, ActivityAction.TAGS_CHANGED, ActivityOutcome.SUCCESS,
                     details=details)

    def _execute_delete(self, effective: EffectiveActions):
        intent = effective.delete
        if intent.mode == DeleteMode.PRESERVE_CROSS_SEEDS:
            with self._delete_lock:
                decision = self._check_cross_seeds(effective.snapshot)
                self._delete(effective, delete_files=not decision.files_kept, decision=decision)
        else:
            self._delete(effective, delete_files=intent.delete_files)

    def _check_cross_seeds(self, snapshot: TorrentSnapshot) -> CrossSeedDecision:
        """Revalidate against live state; any doubt keeps the files"""
        try:
            live = self.api.get_torrents()
        except Exception as e:
            logger.warning(f"Cannot re-read torrents for cross-seed check of {snapshot.name}, keeping files: {e}")
            return CrossSeedDecision(True, reason='live torrent list unavailable')
        with self._stats_lock:
            deleted = set(self._deleted_hashes)
        return resolve(snapshot, live, deleted)

    def _delete(self, effective: EffectiveActions, delete_files: bool,
                decision: Optional[CrossSeedDecision] = None):
        snapshot = effective.snapshot
        intent = effective.delete
        details = dict(intent.details)
        details['deleteMode'] = intent.mode
        details['filesKept'] = not delete_files
        if decision is not None and decision.shared_with:
            details['sharedWith'] = len(decision.shared_with)

        try:
            self.api.delete_torrents([snapshot.hash], delete_files=delete_files)
        except Exception as e:
            self._count('actions_failed')
            logger.error(f"Failed to delete {snapshot.name}: {e}")
            self._record(snapshot, intent.rule, ActivityAction.DELETE_FAILED, ActivityOutcome.FAILED,
                         reason=str(e), details=details)
            return

        with self._stats_lock:
            self._deleted_hashes.add(snapshot.hash.lower())
            self.stats.actions_executed += 1
            self.stats.deleted += 1
        files = 'keeping files' if not delete_files else 'with files'
        logger.info(f"Deleted {snapshot.name} ({files}) - {intent.reason} (rule '{intent.rule.name}')")
        self._record(snapshot, intent.rule, intent.action, ActivityOutcome.SUCCESS,
                     reason=intent.reason, details=details)

    def _record(self, snapshot: TorrentSnapshot, rule: Optional[AutomationRule], action: str, outcome: str,
                reason: str = '', details: Optional[Dict[str, Any]] = None):
        """Append an activity record; recorder failures never abort the scan"""
        if self.dry_run or self.recorder is None:
            return

        activity = AutomationActivity(
            instance_id=self.instance_id,
            hash=snapshot.hash,
            torrent_name=snapshot.name,
            tracker_domain=snapshot.tracker,
            rule_id=rule.id if rule else None,
            rule_name=rule.name if rule else '',
            action=action,
            outcome=outcome,
            reason=reason,
            details=details
        )
        try:
            self.recorder.record_automation(activity)
        except Exception as e:
            self._count('errors')
            logger.error(f"Failed to record activity for {snapshot.name}: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Engine status for the health endpoint"""
        return {
            'instanceId': self.instance_id,
            'state': self.state,
            'dryRun': self.dry_run,
            'lastRun': self.last_run,
        }

    def __repr__(self) -> str:
        return f"<RulesEngine instance={self.instance_id} state={self.state} dry_run={self.dry_run}>"
