"""
Automation service - per-instance wiring of rule engines and reannounce schedulers

This is the single entry point used by the HTTP server, the scan worker and
the CLI. Every operation is addressed by instance id.
"""

import time
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from qbt_automations.activity import ActivityRecorder, DEFAULT_REANNOUNCE_HISTORY, DEFAULT_RETENTION_DAYS
from qbt_automations.activity_backends import create_recorder
from qbt_automations.api import ClientPool
from qbt_automations.config import Config, ENV_VAR_MAP, parse_int, resolve_config
from qbt_automations.database import SQLiteDatabase
from qbt_automations.engine import RulesEngine
from qbt_automations.errors import InstanceNotFoundError
from qbt_automations.models import (
    AutomationActivity, AutomationRule, ReannounceActivity, ReannounceSettings, TorrentSnapshot
)
from qbt_automations.reannounce import DEFAULT_DEBOUNCE_WINDOW, ReannounceScheduler
from qbt_automations.rule_store import RuleStore

logger = logging.getLogger(__name__)

PRUNE_INTERVAL = 3600


class AutomationService:
    """
    Registry of one RulesEngine and one ReannounceScheduler per instance
    """

    def __init__(self, pool: ClientPool, rule_store: RuleStore, recorder: ActivityRecorder,
                 dry_run: bool = False, max_workers: int = 4,
                 retention_days: int = DEFAULT_RETENTION_DAYS, tick_interval: float = 1.0,
                 debounce_window: int = DEFAULT_DEBOUNCE_WINDOW, prune_interval: int = PRUNE_INTERVAL,
                 clock=time.time):
        """
        Initialize service

        Args:
            pool: ClientPool of configured instances
            rule_store: RuleStore for rules and reannounce settings
            recorder: ActivityRecorder shared by all instances
            dry_run: Run engines in dry-run mode
            max_workers: Action execution threads per scan
            retention_days: Activity retention used by the hourly prune
            tick_interval: Reannounce scheduler loop interval in seconds
            debounce_window: Reannounce cooldown in seconds
            prune_interval: Seconds between activity prunes
            clock: Callable returning the current Unix time
        """
        self.pool = pool
        self.rule_store = rule_store
        self.recorder = recorder
        self.dry_run = dry_run
        self.retention_days = retention_days
        self.prune_interval = prune_interval
        self.clock = clock
        self._last_prune: Optional[float] = None

        self.engines: Dict[int, RulesEngine] = {}
        self.schedulers: Dict[int, ReannounceScheduler] = {}

        for instance_id in pool.instance_ids():
            client = pool.get_client(instance_id)
            self.engines[instance_id] = RulesEngine(
                instance_id, client, rule_store, recorder,
                dry_run=dry_run, max_workers=max_workers, clock=clock
            )
            self.schedulers[instance_id] = ReannounceScheduler(
                instance_id, client, recorder,
                settings=rule_store.get_reannounce_settings(instance_id),
                tick_interval=tick_interval, debounce_window=debounce_window, clock=clock
            )

        logger.info(f"Automation service ready for {len(self.engines)} instance(s) (dry_run={dry_run})")

    @classmethod
    def from_config(cls, config: Config, pool: Optional[ClientPool] = None) -> 'AutomationService':
        """
        Build the service from config.yml

        Args:
            config: Loaded configuration
            pool: Client pool (built from config instances when omitted)
        """
        def setting(key, default=None):
            return resolve_config(None, ENV_VAR_MAP[key], config.config, key, default=default)

        db = SQLiteDatabase(str(config.get_database_path()))
        recorder = create_recorder(
            setting('activity.backend', 'sqlite'),
            db=db,
            redis_url=setting('activity.redis_url', 'redis://localhost:6379/0'),
            reannounce_history=parse_int(setting('activity.reannounce_history'), DEFAULT_REANNOUNCE_HISTORY)
        )

        return cls(
            pool or ClientPool(config.get_instances()),
            RuleStore(db),
            recorder,
            dry_run=config.is_dry_run(),
            max_workers=parse_int(setting('engine.max_workers'), 4),
            retention_days=parse_int(setting('activity.retention_days'), DEFAULT_RETENTION_DAYS),
            tick_interval=float(setting('reannounce.tick_interval', 1.0)),
            debounce_window=parse_int(setting('reannounce.debounce_window'), DEFAULT_DEBOUNCE_WINDOW)
        )

    def _engine(self, instance_id: int) -> RulesEngine:
        engine = self.engines.get(instance_id)
        if engine is None:
            raise InstanceNotFoundError(instance_id, sorted(self.engines))
        return engine

    def _scheduler(self, instance_id: int) -> ReannounceScheduler:
        scheduler = self.schedulers.get(instance_id)
        if scheduler is None:
            raise InstanceNotFoundError(instance_id, sorted(self.schedulers))
        return scheduler

    def list_instances(self) -> List[Dict[str, Any]]:
        """Configured instances (no credentials)"""
        return self.pool.describe()

    # ========================================================================
    # Rules
    # ========================================================================

    def list_rules(self, instance_id: int) -> List[AutomationRule]:
        self._engine(instance_id)
        return self.rule_store.list_rules(instance_id)

    def create_rule(self, instance_id: int, data: Dict[str, Any]) -> AutomationRule:
        self._engine(instance_id)
        return self.rule_store.create_rule(instance_id, data)

    def update_rule(self, instance_id: int, rule_id: int, data: Dict[str, Any]) -> AutomationRule:
        self._engine(instance_id)
        return self.rule_store.update_rule(instance_id, rule_id, data)

    def delete_rule(self, instance_id: int, rule_id: int) -> bool:
        self._engine(instance_id)
        return self.rule_store.delete_rule(instance_id, rule_id)

    def reorder_rules(self, instance_id: int, ordered_ids: List[int]) -> List[AutomationRule]:
        self._engine(instance_id)
        return self.rule_store.reorder_rules(instance_id, ordered_ids)

    def import_rules(self, instance_id: int, rules: Iterable[Dict[str, Any]]) -> List[AutomationRule]:
        """Create rules from rules.yml entries"""
        return [self.create_rule(instance_id, data) for data in rules]

    # ========================================================================
    # Reannounce settings
    # ========================================================================

    def get_reannounce_settings(self, instance_id: int) -> ReannounceSettings:
        self._scheduler(instance_id)
        return self.rule_store.get_reannounce_settings(instance_id)

    def update_reannounce_settings(self, instance_id: int,
                                   data: Union[Dict[str, Any], ReannounceSettings]) -> ReannounceSettings:
        """Save settings and push them to the instance's scheduler"""
        scheduler = self._scheduler(instance_id)
        settings = self.rule_store.update_reannounce_settings(instance_id, data)
        scheduler.update_settings(settings)
        return settings

    def request_reannounce(self, instance_id: int, hashes: List[str]) -> Dict[str, str]:
        return self._scheduler(instance_id).request(hashes)

    # ========================================================================
    # Actions
    # ========================================================================

    def apply_now(self, instance_id: int) -> Optional[Dict[str, Any]]:
        """
        Run a scan immediately

        Returns:
            Stats dictionary, or None if a scan was already running
        """
        stats = self._engine(instance_id).run(trigger='manual')
        return stats.to_dict() if stats is not None else None

    def preview(self, instance_id: int, rule_data: Dict[str, Any], limit: int = 25,
                offset: int = 0) -> Dict[str, Any]:
        return self._engine(instance_id).preview(rule_data, limit=limit, offset=offset)

    def plan(self, instance_id: int) -> List[Dict[str, Any]]:
        return self._engine(instance_id).plan()

    # ========================================================================
    # Activity
    # ========================================================================

    def list_activity(self, instance_id: int, limit: int = 100) -> List[AutomationActivity]:
        self._engine(instance_id)
        return self.recorder.list_automation(instance_id, limit)

    def delete_activity_older_than(self, instance_id: int, days: int) -> int:
        self._engine(instance_id)
        return self.recorder.delete_automation_older_than(instance_id, days)

    def list_reannounce_activity(self, instance_id: int, limit: int = 100) -> List[ReannounceActivity]:
        self._scheduler(instance_id)
        return self.recorder.list_reannounce(instance_id, limit)

    def delete_reannounce_activity_older_than(self, instance_id: int, days: int) -> int:
        self._scheduler(instance_id)
        return self.recorder.delete_reannounce_older_than(instance_id, days)

    # ========================================================================
    # Periodic work
    # ========================================================================

    def tick(self, trigger: str = 'scheduled') -> Dict[int, Optional[Dict[str, int]]]:
        """
        One periodic pass: scan every instance, feed the reannounce
        schedulers, and prune old activity once per prune interval

        Returns:
            Stats per instance (None where a scan was already running)
        """
        results = {}
        for instance_id, engine in self.engines.items():
            stats = engine.run(trigger=trigger)
            results[instance_id] = stats.to_dict() if stats is not None else None
            self._observe(instance_id)

        self._maybe_prune()
        return results

    def _observe(self, instance_id: int):
        scheduler = self.schedulers[instance_id]
        if not scheduler.settings.enabled:
            return

        try:
            torrents = self.engines[instance_id].api.get_torrents()
        except Exception as e:
            logger.warning(f"Instance {instance_id}: cannot read torrents for reannounce monitoring: {e}")
            return

        started = scheduler.observe(TorrentSnapshot.from_api(t) for t in torrents)
        if started:
            logger.debug(f"Instance {instance_id}: {started} new reannounce job(s)")

    def _maybe_prune(self):
        now = self.clock()
        if self._last_prune is not None and now - self._last_prune < self.prune_interval:
            return

        self._last_prune = now
        try:
            self.recorder.prune(self.retention_days)
        except Exception as e:
            logger.error(f"Activity prune failed: {e}")

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self):
        """Start reannounce scheduler threads"""
        for scheduler in self.schedulers.values():
            scheduler.start()

    def stop(self, timeout: float = 30.0):
        """Stop reannounce scheduler threads"""
        for scheduler in self.schedulers.values():
            scheduler.stop(timeout=timeout)

    def get_status(self) -> Dict[str, Any]:
        return {
            'instances': {
                str(instance_id): {
                    'engine': self.engines[instance_id].get_status(),
                    'reannounce': self.schedulers[instance_id].get_status(),
                }
                for instance_id in self.engines
            },
            'activity_healthy': self.recorder.health_check(),
        }

    def close(self):
        self.stop()
        self.recorder.close()

    def __repr__(self) -> str:
        return f"<AutomationService instances={sorted(self.engines)} dry_run={self.dry_run}>"
