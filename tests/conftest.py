"""Pytest configuration and shared fixtures for the qbt-automations test suite."""

import os
import threading
import pytest
from typing import Dict, Any, List
from unittest.mock import Mock
from pathlib import Path

from qbt_automations.database import SQLiteDatabase
from qbt_automations.rule_store import RuleStore
from qbt_automations.activity_backends.sqlite_recorder import SQLiteActivityRecorder


ENV_VARS = ('DRY_RUN', 'LOG_LEVEL', 'TRACE_MODE', 'LOG_FILE', 'CONFIG_DIR')


@pytest.fixture(autouse=True)
def clean_environment_variables():
    """Clean up environment variables before and after each test."""
    original = {name: os.environ.get(name) for name in ENV_VARS}
    qbt_vars = {k: v for k, v in os.environ.items() if k.startswith('QBT_AUTOMATIONS_')}

    for name in ENV_VARS:
        os.environ.pop(name, None)
    for name in qbt_vars:
        os.environ.pop(name, None)

    yield

    for name in ENV_VARS:
        os.environ.pop(name, None)
    for name in [k for k in os.environ if k.startswith('QBT_AUTOMATIONS_')]:
        os.environ.pop(name, None)

    # Restore original values if they existed
    for name, value in original.items():
        if value is not None:
            os.environ[name] = value
    os.environ.update(qbt_vars)


class FakeClock:
    """Manually advanced clock for scheduler and engine tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    """A FakeClock starting at a fixed Unix time."""
    return FakeClock()


# ============================================================================
# Mock QBittorrent API
# ============================================================================

class MockQBittorrentAPI:
    """Mock QBittorrentAPI client for testing without real qBittorrent instance."""

    def __init__(self):
        self.torrents_data = {}
        self.trackers_data = {}
        self.unregistered = set()
        self.stalled_override = {}
        # Guards torrents_data against parallel scan workers
        self._lock = threading.Lock()

        # Methods listed here raise instead of acting
        self.failures = {}

        # Track API calls for verification
        self.calls = {
            'get_torrents': 0,
            'is_unregistered': [],
            'stop': [],
            'reannounce': [],
            'delete': [],
            'add_tags': [],
            'remove_tags': [],
            'set_upload_limit': [],
            'set_download_limit': [],
            'set_share_limits': [],
        }

    def add_torrent(self, torrent: Dict[str, Any]):
        """Register a torrent dictionary keyed by its hash."""
        self.torrents_data[torrent['hash']] = dict(torrent)

    def fail(self, method: str, error: Exception = None):
        """Make a method raise on every call."""
        self.failures[method] = error or RuntimeError(f"{method} failed")

    def _check(self, method: str):
        if method in self.failures:
            raise self.failures[method]

    def get_torrents(self):
        """Get all torrents."""
        self._check('get_torrents')
        with self._lock:
            self.calls['get_torrents'] += 1
            return [dict(t) for t in self.torrents_data.values()]

    def get_torrent(self, torrent_hash):
        """Get one torrent or None."""
        self._check('get_torrent')
        torrent = self.torrents_data.get(torrent_hash)
        return dict(torrent) if torrent else None

    def get_trackers(self, torrent_hash):
        """Get trackers for a torrent."""
        return self.trackers_data.get(torrent_hash, [])

    def is_unregistered(self, torrent_hash):
        """Check unregistered flag."""
        self._check('is_unregistered')
        self.calls['is_unregistered'].append(torrent_hash)
        return torrent_hash in self.unregistered

    def is_stalled(self, torrent_hash, torrent=None):
        """Stalled unless overridden."""
        self._check('is_stalled')
        if torrent_hash in self.stalled_override:
            return self.stalled_override[torrent_hash]
        torrent = torrent or self.torrents_data.get(torrent_hash)
        return bool(torrent) and torrent.get('state') in ('stalledDL', 'stalledUP')

    # Action methods that track calls
    def stop_torrents(self, hashes):
        """Stop torrents."""
        self._check('stop_torrents')
        self.calls['stop'].append(hashes)
        for hash in hashes:
            if hash in self.torrents_data:
                self.torrents_data[hash]['state'] = 'stoppedUP'
        return True

    def reannounce_torrents(self, hashes):
        """Reannounce torrents."""
        self._check('reannounce_torrents')
        self.calls['reannounce'].append(hashes)
        return True

    def delete_torrents(self, hashes, delete_files=False):
        """Delete torrents."""
        self._check('delete_torrents')
        with self._lock:
            self.calls['delete'].append({'hashes': hashes, 'delete_files': delete_files})
            for hash in hashes:
                self.torrents_data.pop(hash, None)
        return True

    def add_tags(self, hashes, tags):
        """Add tags to torrents."""
        self._check('add_tags')
        self.calls['add_tags'].append({'hashes': hashes, 'tags': list(tags)})
        for hash in hashes:
            if hash in self.torrents_data:
                current = [t.strip() for t in self.torrents_data[hash].get('tags', '').split(',') if t.strip()]
                for tag in tags:
                    if tag not in current:
                        current.append(tag)
                self.torrents_data[hash]['tags'] = ', '.join(current)
        return True

    def remove_tags(self, hashes, tags):
        """Remove tags from torrents."""
        self._check('remove_tags')
        self.calls['remove_tags'].append({'hashes': hashes, 'tags': list(tags)})
        for hash in hashes:
            if hash in self.torrents_data:
                current = [t.strip() for t in self.torrents_data[hash].get('tags', '').split(',') if t.strip()]
                remaining = [t for t in current if t not in tags]
                self.torrents_data[hash]['tags'] = ', '.join(remaining)
        return True

    def set_upload_limit(self, hashes, limit):
        """Set upload limit."""
        self._check('set_upload_limit')
        self.calls['set_upload_limit'].append({'hashes': hashes, 'limit': limit})
        for hash in hashes:
            if hash in self.torrents_data:
                self.torrents_data[hash]['up_limit'] = limit
        return True

    def set_download_limit(self, hashes, limit):
        """Set download limit."""
        self._check('set_download_limit')
        self.calls['set_download_limit'].append({'hashes': hashes, 'limit': limit})
        for hash in hashes:
            if hash in self.torrents_data:
                self.torrents_data[hash]['dl_limit'] = limit
        return True

    def set_share_limits(self, hashes, ratio_limit=-2, seeding_time_limit=-2):
        """Set share limits."""
        self._check('set_share_limits')
        self.calls['set_share_limits'].append({
            'hashes': hashes, 'ratio_limit': ratio_limit, 'seeding_time_limit': seeding_time_limit
        })
        for hash in hashes:
            if hash in self.torrents_data:
                self.torrents_data[hash]['ratio_limit'] = ratio_limit
                self.torrents_data[hash]['seeding_time_limit'] = seeding_time_limit
        return True


@pytest.fixture
def mock_api():
    """Create a mock QBittorrentAPI instance."""
    return MockQBittorrentAPI()


def make_torrent(hash: str, name: str = None, **overrides) -> Dict[str, Any]:
    """Build a torrents/info dictionary with sensible defaults."""
    torrent = {
        "hash": hash,
        "name": name or f"Torrent.{hash}",
        "size": 1073741824,  # 1 GB
        "progress": 1.0,
        "ratio": 0.5,
        "seeding_time": 3600,
        "state": "uploading",
        "category": "",
        "tags": "",
        "tracker": "https://tracker.example.com/announce",
        "added_on": 1699990000,
        "completion_on": 1699995000,
        "last_activity": 1699999000,
        "content_path": f"/downloads/{hash}",
        "save_path": "/downloads",
        "up_limit": -1,
        "dl_limit": -1,
        "ratio_limit": -2,
        "seeding_time_limit": -2,
        "num_seeds": 5,
        "num_leechs": 1,
    }
    torrent.update(overrides)
    return torrent


@pytest.fixture
def torrent_factory():
    """Factory for torrents/info dictionaries."""
    return make_torrent


# ============================================================================
# Torrent Fixtures - Various States
# ============================================================================

@pytest.fixture
def sample_torrent() -> Dict[str, Any]:
    """Basic sample torrent - seeding, good ratio."""
    return make_torrent(
        "abc123def456",
        name="Example.Torrent.1080p",
        ratio=2.0,
        seeding_time=172800,  # 2 days
        tracker="https://tracker.example.com/announce",
        category="movies",
        tags="hd, keep",
    )


@pytest.fixture
def downloading_torrent() -> Dict[str, Any]:
    """Torrent currently downloading."""
    return make_torrent(
        "download123",
        name="Downloading.Movie.2160p",
        size=5368709120,  # 5 GB
        progress=0.45,
        ratio=0.0,
        seeding_time=0,
        state="downloading",
        category="movies",
        tags="hd,new",
        completion_on=-1,
    )


@pytest.fixture
def stalled_torrent() -> Dict[str, Any]:
    """Downloading torrent whose trackers are not answering."""
    return make_torrent(
        "stalled789",
        name="Stalled.Release",
        progress=0.0,
        ratio=0.0,
        seeding_time=0,
        state="stalledDL",
        category="tv",
        tracker="udp://tracker.private.org:6969/announce",
        added_on=1_700_000_000 - 60,
    )


@pytest.fixture
def paused_torrent() -> Dict[str, Any]:
    """Paused torrent."""
    return make_torrent(
        "paused456",
        name="Paused.Torrent",
        ratio=0.5,
        state="pausedUP",
        category="misc",
        tags="paused",
    )


@pytest.fixture
def mock_trackers() -> List[Dict[str, Any]]:
    """Mock tracker data."""
    return [
        {"url": "** [DHT] **", "status": 2, "tier": "", "msg": ""},
        {"url": "https://tracker.example.com/announce", "status": 2, "tier": 0, "msg": ""},
        {"url": "udp://backup.example.com:6969/announce", "status": 4, "tier": 1, "msg": "Timed out"},
    ]


# ============================================================================
# Rule Fixtures
# ============================================================================

@pytest.fixture
def legacy_rule() -> Dict[str, Any]:
    """Legacy rule: speed limits plus ratio-based delete."""
    return {
        "name": "Example tracker cleanup",
        "enabled": True,
        "trackerPattern": "example.com",
        "uploadLimitKiB": 1024,
        "ratioLimit": 2.0,
        "deleteMode": "delete",
    }


@pytest.fixture
def expression_rule() -> Dict[str, Any]:
    """Expression rule: tag torrents with a high ratio."""
    return {
        "name": "Tag well seeded",
        "enabled": True,
        "trackerPattern": "*",
        "conditions": {
            "schemaVersion": "1",
            "tag": {
                "enabled": True,
                "mode": "add",
                "tags": ["seeded"],
                "condition": {"field": "RATIO", "operator": "GREATER_THAN_OR_EQUAL", "value": 1.0},
            },
        },
    }


# ============================================================================
# Storage Fixtures
# ============================================================================

@pytest.fixture
def db(tmp_path):
    """Temporary SQLite database."""
    database = SQLiteDatabase(str(tmp_path / "automations.db"))
    yield database
    database.close()


@pytest.fixture
def rule_store(db):
    """RuleStore on the temporary database."""
    return RuleStore(db)


@pytest.fixture
def recorder(db):
    """SQLite activity recorder sharing the temporary database."""
    return SQLiteActivityRecorder(db=db)


# ============================================================================
# Config Fixtures
# ============================================================================

@pytest.fixture
def mock_config():
    """Mock configuration."""
    config = Mock()
    config.get_seed_rules = Mock(return_value=[])
    config.get = Mock(return_value=None)
    config.config = {}
    config.config_dir = Path("/config")
    return config


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create temporary config directory with example files."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()

    (config_dir / "config.yml").write_text("""
instances:
  - id: 1
    name: seedbox
    host: http://localhost:8080
    username: admin
    password: adminpass
  - id: 2
    name: archive
    host: http://archive:8080

database:
  path: qbt-automations.db

logging:
  level: INFO
  file: logs/test.log

engine:
  dry_run: false
""")

    (config_dir / "rules.yml").write_text("""
rules:
  - name: "Limit example uploads"
    trackerPattern: example.com
    uploadLimitKiB: 512
  - name: "Delete finished ratio 2"
    trackerPattern: "*"
    ratioLimit: 2.0
    deleteMode: delete
""")

    return config_dir


# ============================================================================
# Redis Test Infrastructure
# ============================================================================

@pytest.fixture(scope="session")
def redis_available():
    """Check if Redis is available for testing."""
    try:
        import redis
    except ImportError:
        return False
    try:
        client = redis.Redis(host='localhost', port=6379, socket_connect_timeout=1)
        client.ping()
        client.close()
        return True
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
        return False


@pytest.fixture
def redis_client(redis_available):
    """
    Provide Redis client for testing.

    Uses real Redis if available, otherwise uses fakeredis.
    Skip tests that require real Redis if neither is available.
    """
    if redis_available:
        import redis
        client = redis.Redis(
            host='localhost',
            port=6379,
            db=15,  # Use dedicated test database
            decode_responses=True
        )
        client.flushdb()
        yield client
        client.flushdb()
        client.close()
    else:
        try:
            from fakeredis import FakeRedis
        except ImportError:
            pytest.skip("Redis not available and fakeredis not installed")
        client = FakeRedis(decode_responses=True)
        yield client
        client.flushall()
