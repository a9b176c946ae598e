"""
Test rule selection by host, method and path
"""

from capture_relay.engine.matcher import RequestTarget, match_url, matches_capture_rules
from capture_relay.models.rules import CaptureRule, InterceptRule, ResponseRule


def response_rule(**fields):
    data = {"host": "api.example.com", "method": "GET", "pathRegex": "", "createdAt": "2024-01-01T00:00:00.000Z"}
    data.update(fields)
    return ResponseRule.model_validate(data)


def test_target_keeps_query_in_path():
    target = RequestTarget.from_url("https://Api.Example.com/list?page=2", "get")

    assert target.hostname == "api.example.com"
    assert target.method == "GET"
    assert target.path == "/list?page=2"


def test_target_defaults_path_to_root():
    assert RequestTarget.from_url("https://example.com", "GET").path == "/"


def test_malformed_url_matches_nothing():
    rules = [response_rule(host="*")]

    assert RequestTarget.from_url("not a url", "GET") is None
    assert match_url(rules, "not a url", "GET") is None
    assert match_url(rules, "http://[broken", "GET") is None
    assert match_url(rules, None, "GET") is None


def test_disabled_rule_never_matches():
    rule = response_rule(enabled=False)

    assert match_url([rule], "https://api.example.com/v1/user", "GET") is None


def test_most_recently_updated_rule_wins():
    older = response_rule(id="older", updatedAt="2024-01-02T00:00:00.000Z")
    newer = response_rule(id="newer", updatedAt="2024-01-03T00:00:00.000Z")

    result = match_url([newer, older], "https://api.example.com/v1/user", "GET")
    assert result.rule.id == "newer"
    assert result.candidates == 2

    result = match_url([older, newer], "https://api.example.com/v1/user", "GET")
    assert result.rule.id == "newer"


def test_created_at_used_when_never_updated():
    updated = response_rule(id="updated", createdAt="2024-01-01T00:00:00.000Z", updatedAt="2024-02-01T00:00:00.000Z")
    fresh = response_rule(id="fresh", createdAt="2024-03-01T00:00:00.000Z")

    result = match_url([updated, fresh], "https://api.example.com/", "GET")
    assert result.rule.id == "fresh"


def test_equal_timestamps_keep_collection_order():
    first = response_rule(id="first")
    second = response_rule(id="second")

    assert match_url([first, second], "https://api.example.com/", "GET").rule.id == "first"
    assert match_url([second, first], "https://api.example.com/", "GET").rule.id == "second"


def test_host_matching_is_unanchored_containment():
    rule = response_rule(host="example.com", method="*")

    assert match_url([rule], "https://example.com/", "GET") is not None
    assert match_url([rule], "https://sub.example.com/", "GET") is not None
    # Known behaviour: look-alike hosts containing the rule host also match
    assert match_url([rule], "https://evilexample.com.attacker.net/", "GET") is not None
    assert match_url([rule], "https://example.org/", "GET") is None



def test_rule_host_is_compared_case_sensitively():
    lower = response_rule(host="example.com", method="*")
    upper = response_rule(host="Example.com", method="*")

    # URL hostnames are lowercased, the rule host is used as written
    assert match_url([lower], "https://WWW.EXAMPLE.COM/", "GET") is not None
    assert match_url([upper], "https://example.com/", "GET") is None

def test_wildcard_host_and_method():
    rule = response_rule(host="*", method="*")

    assert match_url([rule], "https://anything.test/x", "DELETE") is not None


def test_method_must_match_exactly():
    rule = response_rule(method="post")

    assert match_url([rule], "https://api.example.com/", "POST") is not None
    assert match_url([rule], "https://api.example.com/", "post") is not None
    assert match_url([rule], "https://api.example.com/", "GET") is None


def test_path_regex_is_case_insensitive_search():
    rule = response_rule(pathRegex="^/v1/user$")

    assert match_url([rule], "https://api.example.com/V1/USER", "GET") is not None
    assert match_url([rule], "https://api.example.com/v1/users", "GET") is None

    query_rule = response_rule(pathRegex="page=\\d+")
    assert match_url([query_rule], "https://api.example.com/list?page=3", "GET") is not None


def test_invalid_regex_skips_only_that_rule():
    broken = response_rule(id="broken", pathRegex="(", updatedAt="2024-05-01T00:00:00.000Z")
    working = response_rule(id="working", pathRegex="^/v1")

    result = match_url([broken, working], "https://api.example.com/v1/user", "GET")
    assert result.rule.id == "working"
    assert result.candidates == 1


def test_intercept_rules_match_like_response_rules():
    rule = InterceptRule.model_validate({"host": "shop.test", "method": "POST", "pathRegex": "/cart"})

    assert match_url([rule], "https://shop.test/cart/add", "POST").rule is rule
    assert match_url([rule], "https://shop.test/cart/add", "GET") is None


def test_empty_capture_rules_capture_everything():
    assert matches_capture_rules([], "https://any.host/path", "GET")
    assert matches_capture_rules([], "garbage", "PATCH")


def test_capture_rules_deny_unless_matched():
    rules = [CaptureRule(host="api.example.com", methods=["get", "post"])]

    assert matches_capture_rules(rules, "https://api.example.com/a", "GET")
    assert matches_capture_rules(rules, "https://api.example.com/a", "POST")
    assert not matches_capture_rules(rules, "https://api.example.com/a", "DELETE")
    assert not matches_capture_rules(rules, "https://other.example.net/a", "GET")


def test_capture_rule_without_methods_accepts_all():
    rules = [CaptureRule(host="example.com")]

    assert matches_capture_rules(rules, "https://example.com/", "OPTIONS")


def test_capture_rule_bare_method_string():
    rule = CaptureRule(host="example.com", methods="get")

    assert rule.methods == ["GET"]


def test_all_capture_rules_disabled_captures_nothing():
    rules = [CaptureRule(host="example.com", enabled=False)]

    assert not matches_capture_rules(rules, "https://example.com/", "GET")


def test_disabling_selected_rule_falls_back_to_next():
    newer = response_rule(id="newer", updatedAt="2024-06-01T00:00:00.000Z")
    older = response_rule(id="older")

    assert match_url([newer, older], "https://api.example.com/", "GET").rule.id == "newer"

    disabled = newer.model_copy(update={"enabled": False})
    assert match_url([disabled, older], "https://api.example.com/", "GET").rule.id == "older"


def test_recency_is_shared_by_every_rule_kind():
    capture = CaptureRule(host="a.test", created_at="2024-01-01T00:00:00.000Z")
    intercept = InterceptRule.model_validate({
        "host": "a.test",
        "createdAt": "2024-01-01T00:00:00.000Z",
        "updatedAt": "2024-03-01T00:00:00.000Z",
    })

    assert capture.recency.month == 1
    assert intercept.recency.month == 3
    assert "createdAt" in intercept.to_record()
    assert "created_at" in capture.to_record()
