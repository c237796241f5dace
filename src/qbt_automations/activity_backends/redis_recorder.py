"""
Redis Activity Backend

Activity log kept in Redis with:
- Connection pooling
- Time-sorted indexes for newest-first listing and age-based deletion
- Optional persistence (depends on Redis configuration)
"""

import json
import logging
from datetime import datetime
from typing import List, Optional

try:
    import redis
except ImportError:
    raise ImportError(
        "Redis backend requires 'redis' package. "
        "Install with: pip install qbt-automations[redis]"
    )

from qbt_automations.activity import ActivityRecorder, DEFAULT_REANNOUNCE_HISTORY, DEFAULT_RETENTION_DAYS, retention_cutoff
from qbt_automations.models import AutomationActivity, ReannounceActivity

logger = logging.getLogger(__name__)

AUTOMATION = 'automation'
REANNOUNCE = 'reannounce'


class RedisActivityRecorder(ActivityRecorder):
    """
    Redis-based activity log

    Uses Redis data structures:
    - STRING: Id counters per log kind
    - HASH: Record JSON by id
    - ZSET: Record ids sorted by creation time
    - SET: Instances that have records (for pruning)

    Key patterns:
    - qbt_automations:{kind}:next_id - Id counter (STRING)
    - qbt_automations:{kind}:{instance}:records - Records (HASH)
    - qbt_automations:{kind}:{instance}:by_time - Ids by timestamp (ZSET)
    - qbt_automations:{kind}:instances - Instance ids (SET)
    """

    KEY_PREFIX = "qbt_automations"

    def __init__(self, redis_url: str = 'redis://localhost:6379/0',
                 reannounce_history: int = DEFAULT_REANNOUNCE_HISTORY):
        """
        Initialize Redis activity log

        Args:
            redis_url: Redis connection URL
                      Format: redis://[:password@]host[:port][/database]
            reannounce_history: Per-instance cap on reannounce records
        """
        super().__init__(reannounce_history)
        self.redis_url = redis_url

        try:
            self.pool = redis.ConnectionPool.from_url(
                redis_url,
                decode_responses=True,
                max_connections=10,
                socket_timeout=5,
                socket_connect_timeout=5
            )
            self.redis = redis.Redis(connection_pool=self.pool)

            self.redis.ping()

            logger.info(f"Redis activity log initialized: {redis_url}")

        except redis.ConnectionError as e:
            raise ConnectionError(f"Cannot connect to Redis at {redis_url}: {e}")
        except Exception as e:
            raise RuntimeError(f"Redis initialization failed: {e}")

    def _key(self, *parts) -> str:
        """Build Redis key with prefix"""
        return ':'.join([self.KEY_PREFIX] + [str(p) for p in parts])

    # Automation activity

    def record_automation(self, activity: AutomationActivity) -> int:
        """Append a rule engine record"""
        activity.id = self._append(AUTOMATION, activity.instance_id, activity.created_at, activity)
        return activity.id

    def list_automation(self, instance_id: int, limit: int = 100) -> List[AutomationActivity]:
        """List rule engine records, newest first"""
        return [AutomationActivity.from_dict(data) for data in self._list(AUTOMATION, instance_id, limit)]

    def delete_automation_older_than(self, instance_id: int, days: int,
                                     now: Optional[datetime] = None) -> int:
        """Delete rule engine records created before now - days"""
        return self._delete_older_than(AUTOMATION, instance_id, retention_cutoff(days, now))

    # Reannounce activity

    def record_reannounce(self, activity: ReannounceActivity) -> int:
        """Append a reannounce record and enforce the history cap"""
        activity.id = self._append(REANNOUNCE, activity.instance_id, activity.timestamp, activity)

        if self.reannounce_history > 0:
            by_time = self._key(REANNOUNCE, activity.instance_id, 'by_time')
            excess = self.redis.zcard(by_time) - self.reannounce_history
            if excess > 0:
                old_ids = self.redis.zrange(by_time, 0, excess - 1)
                self._remove(REANNOUNCE, activity.instance_id, old_ids)

        return activity.id

    def list_reannounce(self, instance_id: int, limit: int = 100) -> List[ReannounceActivity]:
        """List reannounce records, newest first"""
        return [ReannounceActivity.from_dict(data) for data in self._list(REANNOUNCE, instance_id, limit)]

    def delete_reannounce_older_than(self, instance_id: int, days: int,
                                     now: Optional[datetime] = None) -> int:
        """Delete reannounce records created before now - days"""
        return self._delete_older_than(REANNOUNCE, instance_id, retention_cutoff(days, now))

    # Maintenance

    def prune(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete records older than the retention window across all instances"""
        cutoff = retention_cutoff(retention_days)

        deleted = 0
        for kind in (AUTOMATION, REANNOUNCE):
            for instance_id in self.redis.smembers(self._key(kind, 'instances')):
                deleted += self._delete_older_than(kind, int(instance_id), cutoff)

        if deleted > 0:
            logger.info(f"Pruned {deleted} activity record(s) older than {retention_days} day(s)")
        return deleted

    def health_check(self) -> bool:
        """Check if Redis is accessible"""
        try:
            self.redis.ping()
            return True
        except Exception as e:
            logger.error(f"Activity log health check failed: {e}")
            return False

    def close(self):
        """Close Redis connection pool"""
        self.pool.disconnect()

    # Helpers

    def _append(self, kind: str, instance_id: int, created: datetime, record) -> int:
        record_id = int(self.redis.incr(self._key(kind, 'next_id')))
        record.id = record_id

        pipeline = self.redis.pipeline()
        pipeline.hset(self._key(kind, instance_id, 'records'), str(record_id), json.dumps(record.to_dict()))
        pipeline.zadd(self._key(kind, instance_id, 'by_time'), {str(record_id): created.timestamp()})
        pipeline.sadd(self._key(kind, 'instances'), str(instance_id))
        pipeline.execute()

        logger.debug(f"Recorded {kind} activity {record_id} for instance {instance_id}")
        return record_id

    def _list(self, kind: str, instance_id: int, limit: int) -> List[dict]:
        if limit <= 0:
            return []

        ids = self.redis.zrevrange(self._key(kind, instance_id, 'by_time'), 0, limit - 1)
        if not ids:
            return []

        raw = self.redis.hmget(self._key(kind, instance_id, 'records'), ids)
        return [json.loads(item) for item in raw if item]

    def _delete_older_than(self, kind: str, instance_id: int, cutoff: Optional[datetime]) -> int:
        by_time = self._key(kind, instance_id, 'by_time')

        if cutoff is None:
            ids = self.redis.zrange(by_time, 0, -1)
        else:
            # exclusive upper bound: created_at < cutoff
            ids = self.redis.zrangebyscore(by_time, '-inf', f'({cutoff.timestamp()}')

        deleted = self._remove(kind, instance_id, ids)
        if deleted > 0:
            logger.info(f"Deleted {deleted} {kind} record(s) for instance {instance_id}")
        return deleted

    def _remove(self, kind: str, instance_id: int, ids: List[str]) -> int:
        if not ids:
            return 0

        pipeline = self.redis.pipeline()
        pipeline.hdel(self._key(kind, instance_id, 'records'), *ids)
        pipeline.zrem(self._key(kind, instance_id, 'by_time'), *ids)
        pipeline.execute()
        return len(ids)
