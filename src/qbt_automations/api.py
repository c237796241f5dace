"""
qBittorrent Web API client - qbittorrent-api wrapper

Wraps the qbittorrent-api package and exposes the capabilities the rule
engine and reannounce scheduler need: list torrents, set limits, pause,
delete, tag and reannounce. ClientPool maps fleet instance ids to clients.
"""

import threading
import qbittorrentapi
from typing import List, Dict, Any, Optional

from qbt_automations.errors import AuthenticationError, ConnectionError, InstanceNotFoundError
from qbt_automations.logging import get_logger
from qbt_automations.utils import is_unregistered_message

logger = get_logger(__name__)

STALLED_STATES = ('stalledDL', 'stalledUP')

# qBittorrent tracker status codes
TRACKER_DISABLED = 0
TRACKER_NOT_CONTACTED = 1
TRACKER_WORKING = 2
TRACKER_UPDATING = 3
TRACKER_NOT_WORKING = 4


def is_pseudo_tracker(tracker: Dict) -> bool:
    """DHT, PeX and LSD entries are listed as '** [DHT] **' style trackers"""
    return str(tracker.get('url', '')).startswith('**')


class QBittorrentAPI:
    """
    qBittorrent Web API client wrapper

    Uses qbittorrent-api package for:
    - Multi-version support (v4.1+ through v5.x)
    - Auto-managed authentication
    - Structured response types
    """

    def __init__(self, host: str, username: str, password: str, connect_now: bool = True):
        """
        Initialize API client and optionally authenticate

        Args:
            host: qBittorrent host URL (e.g., 'http://localhost:8080')
            username: qBittorrent username
            password: qBittorrent password
            connect_now: If True, authenticate immediately; if False, defer until first API call

        Raises:
            AuthenticationError: If login fails (only when connect_now=True)
            ConnectionError: If cannot reach server (only when connect_now=True)
        """
        self.host = host.rstrip('/')
        self.username = username
        self.password = password
        self._connected = False

        self.client = qbittorrentapi.Client(
            host=self.host,
            username=self.username,
            password=self.password
        )

        if connect_now:
            self._ensure_connected()

    def _ensure_connected(self):
        """
        Ensure we're connected to qBittorrent (lazy initialization support)

        Raises:
            AuthenticationError: If login fails
            ConnectionError: If cannot reach server
        """
        if self._connected:
            return

        try:
            self.client.auth_log_in()
            self._connected = True

            logger.info(f"Successfully authenticated with qBittorrent at {self.host}")
            logger.debug(f"qBittorrent version: {self.client.app_version()}")
        except qbittorrentapi.LoginFailed as e:
            raise AuthenticationError(self.host, str(e))
        except qbittorrentapi.APIConnectionError as e:
            raise ConnectionError(self.host, str(e))
        except Exception as e:
            raise ConnectionError(self.host, str(e))

    # Torrent Information Methods

    def get_torrents(self) -> List[Dict]:
        """
        Get all torrents of the instance

        Returns:
            List of torrent dictionaries
        """
        self._ensure_connected()
        torrents = self.client.torrents_info()
        return [dict(t) for t in torrents]

    def get_torrent(self, torrent_hash: str) -> Optional[Dict]:
        """
        Get single torrent by hash

        Args:
            torrent_hash: Torrent hash

        Returns:
            Torrent dictionary or None if not found
        """
        self._ensure_connected()
        torrents = self.client.torrents_info(torrent_hashes=torrent_hash)
        return dict(torrents[0]) if torrents else None

    def get_trackers(self, torrent_hash: str) -> List[Dict]:
        """
        Get tracker information for a torrent

        Args:
            torrent_hash: Torrent hash

        Returns:
            List of tracker dictionaries
        """
        self._ensure_connected()
        trackers = self.client.torrents_trackers(torrent_hash=torrent_hash)
        return [dict(t) for t in trackers]

    def is_unregistered(self, torrent_hash: str) -> bool:
        """Check whether any real tracker reports the torrent as unregistered"""
        for tracker in self.get_trackers(torrent_hash):
            if is_pseudo_tracker(tracker) or tracker.get('status') == TRACKER_DISABLED:
                continue
            if is_unregistered_message(tracker.get('msg')):
                return True
        return False

    def is_stalled(self, torrent_hash: str, torrent: Optional[Dict] = None) -> bool:
        """
        Check whether a torrent is stalled without a healthy tracker

        A torrent in a stalled state still counts as healthy when at least one
        tracker is working and does not report it unregistered.

        Args:
            torrent_hash: Torrent hash
            torrent: Already fetched torrent dictionary (optional)

        Returns:
            True if stalled; False if healthy or no longer present
        """
        if torrent is None:
            torrent = self.get_torrent(torrent_hash)
        if not torrent or torrent.get('state') not in STALLED_STATES:
            return False

        for tracker in self.get_trackers(torrent_hash):
            if is_pseudo_tracker(tracker):
                continue
            if tracker.get('status') == TRACKER_WORKING and not is_unregistered_message(tracker.get('msg')):
                return False
        return True

    # Torrent Control Methods

    def stop_torrents(self, hashes: List[str]) -> bool:
        """Stop torrents (pause in qBittorrent v4)"""
        self._ensure_connected()
        self.client.torrents_pause(torrent_hashes=hashes)
        return True

    def reannounce_torrents(self, hashes: List[str]) -> bool:
        """Reannounce torrents to trackers"""
        self._ensure_connected()
        self.client.torrents_reannounce(torrent_hashes=hashes)
        return True

    def delete_torrents(self, hashes: List[str], delete_files: bool) -> bool:
        """Delete torrents, optionally with their data"""
        self._ensure_connected()
        self.client.torrents_delete(delete_files=delete_files, torrent_hashes=hashes)
        return True

    # Tag Methods

    def add_tags(self, hashes: List[str], tags: List[str]) -> bool:
        """Add tags"""
        self._ensure_connected()
        self.client.torrents_add_tags(tags=tags, torrent_hashes=hashes)
        return True

    def remove_tags(self, hashes: List[str], tags: List[str]) -> bool:
        """Remove tags"""
        self._ensure_connected()
        self.client.torrents_remove_tags(tags=tags, torrent_hashes=hashes)
        return True

    # Limit Methods

    def set_upload_limit(self, hashes: List[str], limit: int) -> bool:
        """Set upload limit (bytes/s, -1 for unlimited)"""
        self._ensure_connected()
        self.client.torrents_set_upload_limit(limit=limit, torrent_hashes=hashes)
        return True

    def set_download_limit(self, hashes: List[str], limit: int) -> bool:
        """Set download limit (bytes/s, -1 for unlimited)"""
        self._ensure_connected()
        self.client.torrents_set_download_limit(limit=limit, torrent_hashes=hashes)
        return True

    def set_share_limits(self, hashes: List[str], ratio_limit: float = -2,
                         seeding_time_limit: int = -2) -> bool:
        """
        Set share limits

        Args:
            hashes: List of torrent hashes
            ratio_limit: Max ratio (-2=global, -1=unlimited, >=0=limit)
            seeding_time_limit: Max seeding time in minutes (-2=global, -1=unlimited, >=0=limit)
        """
        self._ensure_connected()
        self.client.torrents_set_share_limits(
            ratio_limit=ratio_limit,
            seeding_time_limit=seeding_time_limit,
            inactive_seeding_time_limit=-2,
            torrent_hashes=hashes
        )
        return True


class ClientPool:
    """
    Registry of qBittorrent clients keyed by instance id

    Clients are created lazily and never connect until their first call.
    """

    def __init__(self, instances: List[Dict[str, Any]], client_factory=None):
        """
        Args:
            instances: Instance definitions from Config.get_instances()
            client_factory: Callable(instance) -> client (defaults to QBittorrentAPI)
        """
        self.instances = {int(inst['id']): inst for inst in instances}
        self._factory = client_factory or self._default_factory
        self._clients: Dict[int, Any] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _default_factory(instance: Dict[str, Any]) -> QBittorrentAPI:
        return QBittorrentAPI(
            host=instance['host'],
            username=instance.get('username', 'admin'),
            password=instance.get('password', ''),
            connect_now=False
        )

    def instance_ids(self) -> List[int]:
        """Configured instance ids in ascending order"""
        return sorted(self.instances)

    def describe(self) -> List[Dict[str, Any]]:
        """Public instance info (no credentials)"""
        return [
            {'id': i, 'name': self.instances[i]['name'], 'host': self.instances[i]['host']}
            for i in self.instance_ids()
        ]

    def get_client(self, instance_id: int):
        """
        Get (or create) the client for an instance

        Raises:
            InstanceNotFoundError: If the instance is not configured
        """
        if instance_id not in self.instances:
            raise InstanceNotFoundError(instance_id, self.instance_ids())

        with self._lock:
            client = self._clients.get(instance_id)
            if client is None:
                client = self._factory(self.instances[instance_id])
                self._clients[instance_id] = client
            return client
