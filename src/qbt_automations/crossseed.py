"""
Cross-seed aware file retention

Before a torrent is deleted with its files, check whether any other torrent
on the same instance still uses the same content. If so, the files are kept.
"""

from typing import Any, Dict, Iterable, List, Optional, Union

from qbt_automations.models import TorrentSnapshot
from qbt_automations.utils import normalize_path


class CrossSeedDecision:
    """Result of a file-retention check"""

    def __init__(self, files_kept: bool, shared_with: Optional[List[str]] = None, reason: str = ''):
        self.files_kept = files_kept
        self.shared_with = list(shared_with or [])
        self.reason = reason

    def __repr__(self) -> str:
        return f"<CrossSeedDecision files_kept={self.files_kept} shared_with={len(self.shared_with)}>"


def _path_of(torrent: Union[TorrentSnapshot, Dict[str, Any]]) -> str:
    if isinstance(torrent, TorrentSnapshot):
        return torrent.content_path
    return torrent.get('content_path') or ''


def _hash_of(torrent: Union[TorrentSnapshot, Dict[str, Any]]) -> str:
    if isinstance(torrent, TorrentSnapshot):
        return torrent.hash
    return torrent.get('hash') or ''


def _overlaps(a: str, b: str) -> bool:
    """Same path, or one nests under the other"""
    if a == b:
        return True
    return a.startswith(b + '/') or b.startswith(a + '/')


def resolve(target: Union[TorrentSnapshot, Dict[str, Any]],
            live_torrents: Iterable[Union[TorrentSnapshot, Dict[str, Any]]],
            deleted_hashes: Optional[Iterable[str]] = None) -> CrossSeedDecision:
    """
    Decide whether a delete-with-files must keep the files

    Args:
        target: Torrent about to be deleted
        live_torrents: Fresh listing of the instance's torrents
        deleted_hashes: Torrents already deleted in this scan (ignored as sharers)

    Returns:
        CrossSeedDecision with files_kept=True if another torrent shares the content,
        or if the target has no content path to compare
    """
    target_path = normalize_path(_path_of(target))
    if not target_path:
        return CrossSeedDecision(True, reason='content path unknown')

    target_hash = _hash_of(target).lower()
    skip = {h.lower() for h in (deleted_hashes or [])}
    skip.add(target_hash)

    shared_with = []
    for torrent in live_torrents:
        torrent_hash = _hash_of(torrent).lower()
        if torrent_hash in skip:
            continue
        other_path = normalize_path(_path_of(torrent))
        if other_path and _overlaps(target_path, other_path):
            shared_with.append(torrent_hash)

    if shared_with:
        return CrossSeedDecision(True, shared_with, reason=f"content shared with {len(shared_with)} torrent(s)")
    return CrossSeedDecision(False)
