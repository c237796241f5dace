"""
Shared utility functions for qbt-automations
"""

import re
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse


# Tracker messages that mean the torrent was removed from the tracker
UNREGISTERED_PATTERNS = [
    'unregistered',
    'not registered',
    'torrent not found',
    'torrent does not exist',
    'unknown torrent',
    'infohash not found',
    'torrent has been deleted',
    'torrent has been nuked',
    'trumped',
    'dupe',
    'retitled',
    'truncated',
]

_HOST_SANITIZE = re.compile(r'[^a-zA-Z0-9.\-]')


def parse_tags(tags: Any) -> List[str]:
    """
    Parse tags into a list

    Args:
        tags: Comma-separated tag string from qBittorrent, or an iterable of tags

    Returns:
        List of tag strings
    """
    if not tags:
        return []
    if isinstance(tags, str):
        parts = tags.split(',')
    else:
        parts = list(tags)
    return [str(tag).strip() for tag in parts if str(tag).strip()]


def extract_domain(url_or_host: Optional[str]) -> str:
    """
    Extract tracker domain from an announce URL or bare host

    Args:
        url_or_host: Announce URL (e.g., 'https://tracker.example.org:443/announce')

    Returns:
        Lowercased hostname, or '' if none can be determined

    Examples:
        >>> extract_domain('udp://tracker.example.org:6969/announce')
        'tracker.example.org'
        >>> extract_domain('Tracker.Example.org')
        'tracker.example.org'
    """
    if not url_or_host:
        return ''

    clean = url_or_host.strip()
    if '://' in clean:
        host = urlparse(clean).hostname
        return host.lower() if host else ''

    clean = clean.split('/')[0].split(':')[0]
    return _HOST_SANITIZE.sub('', clean).lower()


def normalize_path(path: Optional[str]) -> str:
    """
    Normalize a content path for comparison

    Lowercases, converts backslashes to forward slashes and strips trailing slashes.

    Examples:
        >>> normalize_path('/Data/Media/Show/')
        '/data/media/show'
    """
    if not path:
        return ''
    return path.strip().lower().replace('\\', '/').rstrip('/')


def is_unregistered_message(message: Optional[str]) -> bool:
    """Check if a tracker message reports the torrent as unregistered"""
    if not message:
        return False
    lowered = message.lower()
    return any(pattern in lowered for pattern in UNREGISTERED_PATTERNS)


def kib_to_bytes(kib: Optional[int]) -> int:
    """Convert KiB/s to bytes/s (0 or None means unlimited, returned as -1)"""
    if not kib or kib <= 0:
        return -1
    return int(kib) * 1024


def casefold_set(values: Iterable[str]) -> set:
    """Lowercase set of non-empty strings"""
    return {str(v).strip().lower() for v in values if str(v).strip()}


def format_bytes(bytes_count: float) -> str:
    """
    Format bytes into human-readable string

    Args:
        bytes_count: Number of bytes

    Returns:
        Formatted string like "1.50 GB"
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024.0:
            return f"{bytes_count:.2f} {unit}"
        bytes_count /= 1024.0
    return f"{bytes_count:.2f} PB"


def format_duration(seconds: int) -> str:
    """
    Format seconds into human-readable duration

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "2d 5h 30m"
    """
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"

    parts = []

    days = seconds // 86400
    if days > 0:
        parts.append(f"{days}d")
        seconds %= 86400

    hours = seconds // 3600
    if hours > 0:
        parts.append(f"{hours}h")
        seconds %= 3600

    minutes = seconds // 60
    if minutes > 0:
        parts.append(f"{minutes}m")

    return " ".join(parts)
