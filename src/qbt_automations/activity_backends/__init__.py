"""
Activity log backend implementations

Available backends:
- SQLite: File-based log (default, shares the rules database)
- Redis: In-memory log (optional)
"""

from qbt_automations.activity import ActivityRecorder, DEFAULT_REANNOUNCE_HISTORY
from qbt_automations.activity_backends.sqlite_recorder import SQLiteActivityRecorder

__all__ = ['SQLiteActivityRecorder', 'create_recorder']

# Redis is optional - only import if available
try:
    from qbt_automations.activity_backends.redis_recorder import RedisActivityRecorder
    __all__.append('RedisActivityRecorder')
    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False


def create_recorder(backend: str = 'sqlite', **kwargs) -> ActivityRecorder:
    """
    Factory function to create activity backend instances

    Args:
        backend: Backend type ('sqlite' or 'redis')
        **kwargs: Backend-specific configuration
            db / sqlite_path: Shared SQLiteDatabase or database file (sqlite)
            redis_url: Redis connection URL (redis)
            reannounce_history: Per-instance cap on reannounce records

    Returns:
        ActivityRecorder instance

    Raises:
        ValueError: If backend is unknown or unavailable
    """
    history = kwargs.get('reannounce_history', DEFAULT_REANNOUNCE_HISTORY)

    if backend == 'sqlite':
        return SQLiteActivityRecorder(
            db=kwargs.get('db'),
            db_path=kwargs.get('sqlite_path', '/config/qbt-automations.db'),
            reannounce_history=history
        )

    elif backend == 'redis':
        if not REDIS_AVAILABLE:
            raise ValueError("Redis backend not available. Install with: pip install qbt-automations[redis]")
        redis_url = kwargs.get('redis_url', 'redis://localhost:6379/0')
        return RedisActivityRecorder(redis_url=redis_url, reannounce_history=history)

    else:
        raise ValueError(f"Unknown activity backend: {backend}. Available: sqlite, redis")
