"""
Rule matching

Pure functions that pick the single best rule for a request. Evaluation never
raises: unparsable URLs match nothing and rules with broken path patterns are
skipped.
"""

import re
from dataclasses import dataclass
from typing import Generic, Iterable, List, Optional, TypeVar
from urllib.parse import urlsplit

import structlog

from capture_relay.models.rules import CaptureRule, Rule

logger = structlog.get_logger(component="rule_matcher")

R = TypeVar("R", bound=Rule)


@dataclass(frozen=True)
class RequestTarget:
    """The parts of a request that rules are evaluated against"""

    hostname: str
    method: str
    path: str

    @classmethod
    def from_url(cls, url: str, method: Optional[str]) -> Optional["RequestTarget"]:
        """Build a target from a URL, None when the URL has no usable host"""
        if not url or not isinstance(url, str):
            return None
        try:
            parts = urlsplit(url)
            hostname = parts.hostname
        except ValueError:
            return None
        if not hostname:
            return None

        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        return cls(hostname=hostname, method=(method or "").upper(), path=path)


@dataclass(frozen=True)
class MatchResult(Generic[R]):
    """Winning rule plus the number of rules that matched"""

    rule: R
    candidates: int


def _path_matches(rule: Rule, path: str) -> Optional[bool]:
    """True/False for a usable pattern, None when the pattern does not compile"""
    pattern = rule.pattern
    if not pattern:
        return True
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning("Skipping rule with invalid path regex", rule_id=rule.id, pattern=pattern, error=str(e))
        return None
    return compiled.search(path) is not None


def rule_matches(rule: Rule, target: RequestTarget) -> bool:
    if not rule.enabled:
        return False
    if not rule.accepts_host(target.hostname):
        return False
    if not rule.accepts_method(target.method):
        return False
    return bool(_path_matches(rule, target.path))


def match_rules(rules: Iterable[R], target: Optional[RequestTarget]) -> Optional[MatchResult[R]]:
    """
    Return the best matching rule for a target

    When several rules match, the most recently updated one wins (created
    time when it was never updated). Ties keep the collection order.
    """
    if target is None:
        return None

    candidates: List[R] = [rule for rule in rules if rule_matches(rule, target)]
    if not candidates:
        return None

    # sorted() is stable under reverse=True, equal timestamps keep input order
    ranked = sorted(candidates, key=lambda rule: rule.recency, reverse=True)
    return MatchResult(rule=ranked[0], candidates=len(candidates))


def match_url(rules: Iterable[R], url: str, method: Optional[str]) -> Optional[MatchResult[R]]:
    return match_rules(rules, RequestTarget.from_url(url, method))


def matches_capture_rules(rules: Iterable[CaptureRule], url: str, method: Optional[str]) -> bool:
    """
    Capture gate: an empty rule collection captures everything, otherwise
    something must match
    """
    rules = list(rules)
    if not rules:
        return True
    return match_url(rules, url, method) is not None
