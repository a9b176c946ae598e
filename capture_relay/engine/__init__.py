"""
Capture, Modification and Interception Engine

Rule-driven processing of the traffic pushed by the capturing client.

Components:
- RuleStore: In-memory mirror of the persisted rule collections
- Matcher: Best-rule selection by host, method and path
- CaptureEngine: Capture gate in front of persistence
- ModificationEngine: Response rewriting by response rules
- InterceptionEngine: Hold / auto-release / manual-release state machine
- QueryService: Filtered, paginated reads
- CleanupService: Deletion and retention
- UpstreamClient: Origin calls for released requests
- RelayEngine: Owns all of the above
"""

from .capture import CaptureEngine, CaptureOutcome
from .cleanup import CleanupService
from .flags import RelayFlags
from .interception import InterceptionEngine
from .matcher import MatchResult, RequestTarget, match_rules, match_url, matches_capture_rules
from .modification import ModificationEngine, RewrittenResponse
from .query import QueryService
from .relay import RelayEngine
from .rule_store import RuleStore
from .upstream import UpstreamClient, UpstreamResponse

__all__ = [
    "CaptureEngine",
    "CaptureOutcome",
    "CleanupService",
    "RelayFlags",
    "InterceptionEngine",
    "MatchResult",
    "RequestTarget",
    "match_rules",
    "match_url",
    "matches_capture_rules",
    "ModificationEngine",
    "RewrittenResponse",
    "QueryService",
    "RelayEngine",
    "RuleStore",
    "UpstreamClient",
    "UpstreamResponse",
]
