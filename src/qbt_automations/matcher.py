"""
Scope matching for automation rules and reannounce monitoring

Decides whether a torrent falls inside a rule's tracker/category/tag
scope, and whether a stalled torrent is within the reannounce monitor scope.
"""

import fnmatch
from typing import Iterable, List, Optional, Union

from qbt_automations.models import AutomationRule, ReannounceSettings, RuleScope, TagMatchMode, TorrentSnapshot
from qbt_automations.utils import casefold_set


def _token_matches(token: str, domain: str) -> bool:
    """Compare one lowercased pattern token against one lowercased domain"""
    if not token or not domain:
        return False

    if '*' in token or '?' in token:
        return fnmatch.fnmatchcase(domain, token)

    if token.startswith('.'):
        return domain.endswith(token)

    return domain == token or domain.endswith('.' + token)


def _pattern_tokens(pattern: Union[str, Iterable[str], None]) -> List[str]:
    if pattern is None:
        return []
    if isinstance(pattern, str):
        return RuleScope(tracker_pattern=pattern).tracker_tokens
    return [str(p).strip().lower() for p in pattern if str(p).strip()]


def matches_tracker(pattern: Union[str, Iterable[str], None], domains: Union[str, Iterable[str], None]) -> bool:
    """
    Check tracker domains against a tracker pattern

    Args:
        pattern: '*' for all trackers, a ',', ';' or '|' separated token string, or a list of tokens
        domains: Tracker domain of the torrent (or several)

    Returns:
        True if any token matches any domain

    Examples:
        >>> matches_tracker('*', '')
        True
        >>> matches_tracker('example.org', 'tracker.example.org')
        True
        >>> matches_tracker('', 'tracker.example.org')
        False
    """
    if isinstance(pattern, str) and pattern.strip() == RuleScope.WILDCARD:
        return True

    tokens = _pattern_tokens(pattern)
    if RuleScope.WILDCARD in tokens:
        return True
    if not tokens:
        return False

    if isinstance(domains, str) or domains is None:
        domains = [domains or '']
    candidates = [d.strip().lower() for d in domains if d and d.strip()]

    return any(_token_matches(token, domain) for token in tokens for domain in candidates)


def matches_categories(rule_categories: Optional[Iterable[str]], category: Optional[str]) -> bool:
    """True if no categories are listed or the torrent's category is one of them"""
    wanted = casefold_set(rule_categories or [])
    if not wanted:
        return True
    return (category or '').strip().lower() in wanted


def matches_tags(rule_tags: Optional[Iterable[str]], torrent_tags: Optional[Iterable[str]],
                 mode: str = TagMatchMode.ANY) -> bool:
    """
    Check torrent tags against a rule's tag list

    Args:
        rule_tags: Tags listed on the rule (empty matches everything)
        torrent_tags: Tags on the torrent
        mode: 'any' needs one listed tag present, 'all' needs every listed tag present
    """
    wanted = casefold_set(rule_tags or [])
    if not wanted:
        return True

    present = casefold_set(torrent_tags or [])
    if mode == TagMatchMode.ALL:
        return wanted.issubset(present)
    return bool(wanted & present)


def rule_matches(rule: AutomationRule, snapshot: TorrentSnapshot) -> bool:
    """A rule applies iff its tracker, category and tag scopes all match"""
    scope = rule.scope
    return (
        (scope.is_wildcard or matches_tracker(scope.tracker_pattern, snapshot.tracker))
        and matches_categories(scope.categories, snapshot.category)
        and matches_tags(scope.tags, snapshot.tags, scope.tag_match_mode)
    )


def in_reannounce_scope(settings: ReannounceSettings, snapshot: TorrentSnapshot) -> bool:
    """
    Check whether a torrent should be monitored for reannounce

    Only stalled torrents qualify. Exclusion lists veto first, then
    monitorAll accepts everything; otherwise one inclusion list must match.
    """
    if not snapshot.is_stalled:
        return False

    category_hit = bool(settings.categories) and matches_categories(settings.categories, snapshot.category)
    tag_hit = bool(settings.tags) and matches_tags(settings.tags, snapshot.tags, TagMatchMode.ANY)
    tracker_hit = bool(settings.trackers) and matches_tracker(settings.trackers, snapshot.tracker)

    if settings.exclude_categories and category_hit:
        return False
    if settings.exclude_tags and tag_hit:
        return False
    if settings.exclude_trackers and tracker_hit:
        return False

    if settings.monitor_all:
        return True

    return (
        (category_hit and not settings.exclude_categories)
        or (tag_hit and not settings.exclude_tags)
        or (tracker_hit and not settings.exclude_trackers)
    )
