from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from app.core.exceptions import ValidationError
from app.features.permissions.models import PolicyType
from app.features.permissions.policies import (
    PolicyEffect,
    TimeBasedRules,
    compare,
    dump_rules,
    evaluate,
    lookup,
    order_policies,
    parse_rules,
)
from app.features.permissions.schemas import RequestContext

UTC = timezone.utc
# 2025-06-02 is a Monday
MONDAY_0300_UTC = datetime(2025, 6, 2, 3, 0, tzinfo=UTC)
MONDAY_1500_UTC = datetime(2025, 6, 2, 15, 0, tzinfo=UTC)
SUNDAY_0300_UTC = datetime(2025, 6, 1, 3, 0, tzinfo=UTC)

OFFICE_HOURS = {
    "allowedDays": ["MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY"],
    "allowedHours": "09:00-17:00",
    "timezone": "Asia/Jakarta",
}


def policy(code, policy_type, rules, priority=0, is_active=True, deleted_at=None):
    return SimpleNamespace(
        code=code, policy_type=policy_type, rules=rules, priority=priority,
        is_active=is_active, deleted_at=deleted_at,
    )


# ----------------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------------

def test_parse_time_rules_normalizes_days():
    rules = parse_rules(PolicyType.TIME_BASED, {"allowedDays": ["mon", "Friday"], "allowedHours": "08:30-12:00"})
    assert isinstance(rules, TimeBasedRules)
    assert rules.allowed_days == ["MONDAY", "FRIDAY"]
    assert rules.timezone == "UTC"
    assert dump_rules(rules) == {
        "allowedDays": ["MONDAY", "FRIDAY"], "allowedHours": "08:30-12:00", "timezone": "UTC",
    }


@pytest.mark.parametrize(
    "policy_type, raw",
    [
        (PolicyType.TIME_BASED, {}),
        (PolicyType.TIME_BASED, {"allowedHours": "9-17"}),
        (PolicyType.TIME_BASED, {"allowedDays": ["Funday"]}),
        (PolicyType.TIME_BASED, {"allowedHours": "09:00-17:00", "timezone": "Mars/Olympus"}),
        (PolicyType.TIME_BASED, {"allowedHours": "09:00-17:00", "unknown": 1}),
        (PolicyType.LOCATION_BASED, {}),
        (PolicyType.LOCATION_BASED, {"allowedIps": ["not-an-ip"]}),
        (PolicyType.ATTRIBUTE_BASED, {"attributes": {}}),
        (PolicyType.ATTRIBUTE_BASED, {"attributes": {"device": {"in": "managed"}}}),
        (PolicyType.ATTRIBUTE_BASED, {"attributes": {"device": {"like": "x"}}}),
        (PolicyType.CONTEXTUAL, {"operator": "AND", "conditions": []}),
        (PolicyType.CONTEXTUAL, {"operator": "XOR", "conditions": [{"field": "a", "value": 1}]}),
        (PolicyType.HIERARCHICAL, {}),
    ],
)
def test_parse_rules_rejects_invalid_payloads(policy_type, raw):
    with pytest.raises(ValidationError) as exc:
        parse_rules(policy_type, raw)
    assert exc.value.message.startswith(f"Invalid {policy_type.value} rules:")


def test_parse_nested_contextual_rules():
    rules = parse_rules(PolicyType.CONTEXTUAL, {
        "operator": "OR",
        "conditions": [
            {"field": "device", "value": "managed"},
            {"operator": "AND", "conditions": [{"field": "mfaVerified", "value": True}]},
        ],
    })
    assert rules.operator == "OR"
    assert len(rules.conditions) == 2


# ----------------------------------------------------------------------------
# Predicates
# ----------------------------------------------------------------------------

def test_lookup_walks_dotted_paths():
    values = {"user": {"team": {"name": "ops"}}, "flat.key": 1}
    assert lookup(values, "user.team.name") == "ops"
    assert lookup(values, "flat.key") == 1
    assert lookup(values, "user.missing") is None


@pytest.mark.parametrize(
    "op, actual, expected, result",
    [
        ("eq", 1, 1, True),
        ("neq", 1, 2, True),
        ("gt", 5, 3, True),
        ("gte", 3, 3, True),
        ("lt", None, 3, False),
        ("lte", "a", 3, False),
        ("in", "x", ["x", "y"], True),
        ("nin", "x", ["x", "y"], False),
        ("contains", ["a", "b"], "a", True),
        ("exists", None, True, False),
        ("exists", None, False, True),
    ],
)
def test_compare(op, actual, expected, result):
    assert compare(op, actual, expected) is result


# ----------------------------------------------------------------------------
# Evaluation per policy type
# ----------------------------------------------------------------------------

def test_time_policy_allows_inside_office_hours():
    verdict = evaluate(
        [policy("office", PolicyType.TIME_BASED, OFFICE_HOURS)],
        RequestContext(timestamp=MONDAY_0300_UTC),
    )
    assert verdict.effect == PolicyEffect.ALLOW
    assert verdict.evaluated == ("office",)


def test_time_policy_denies_outside_office_hours_in_policy_timezone():
    # 15:00 UTC is 22:00 in Jakarta
    verdict = evaluate(
        [policy("office", PolicyType.TIME_BASED, OFFICE_HOURS)],
        RequestContext(timestamp=MONDAY_1500_UTC),
    )
    assert verdict.effect == PolicyEffect.DENY
    assert verdict.policy_code == "office"
    assert verdict.reason == "access allowed only between 09:00-17:00 Asia/Jakarta, request at 22:00"


def test_time_policy_denies_on_disallowed_day():
    verdict = evaluate(
        [policy("office", PolicyType.TIME_BASED, OFFICE_HOURS)],
        RequestContext(timestamp=SUNDAY_0300_UTC),
    )
    assert verdict.effect == PolicyEffect.DENY
    assert verdict.reason == "access not allowed on SUNDAY (Asia/Jakarta)"


@pytest.mark.parametrize("hour, allowed", [(23, True), (3, True), (12, False)])
def test_time_window_wrapping_midnight(hour, allowed):
    night = policy("night", PolicyType.TIME_BASED, {"allowedHours": "22:00-06:00"})
    verdict = evaluate([night], RequestContext(timestamp=datetime(2025, 6, 2, hour, tzinfo=UTC)))
    assert (verdict.effect == PolicyEffect.ALLOW) is allowed


@pytest.mark.parametrize(
    "ip, location, allowed",
    [
        ("10.1.2.3", "ID", True),
        ("10.1.2.3", "US", False),
        ("10.9.9.9", "ID", False),
        ("192.168.1.5", "ID", False),
        (None, "ID", False),
    ],
)
def test_location_policy(ip, location, allowed):
    rules = {"allowedIps": ["10.0.0.0/8"], "deniedIps": ["10.9.9.*"], "deniedLocations": ["us"]}
    verdict = evaluate(
        [policy("office-net", PolicyType.LOCATION_BASED, rules)],
        RequestContext(ip_address=ip, location=location),
    )
    assert (verdict.effect == PolicyEffect.ALLOW) is allowed


def test_location_allow_list_is_case_insensitive():
    p = policy("geo", PolicyType.LOCATION_BASED, {"allowedLocations": ["ID", "SG"]})
    assert evaluate([p], RequestContext(location="sg")).effect == PolicyEffect.ALLOW
    denied = evaluate([p], RequestContext())
    assert denied.reason == "location unknown is not in the allowed list"


def test_attribute_policy_reads_camel_and_extra_keys():
    p = policy("mfa", PolicyType.ATTRIBUTE_BASED, {
        "attributes": {"mfaVerified": True, "device": {"in": ["managed", "kiosk"]}, "clearance": {"gte": 3}},
    })
    ok = RequestContext.model_validate({"mfaVerified": True, "device": "managed", "clearance": 4})
    assert evaluate([p], ok).effect == PolicyEffect.ALLOW

    no_mfa = RequestContext.model_validate({"mfaVerified": False, "device": "managed", "clearance": 4})
    verdict = evaluate([p], no_mfa)
    assert verdict.effect == PolicyEffect.DENY
    assert verdict.reason.startswith("attribute mfaVerified")


@pytest.mark.parametrize(
    "context, allowed",
    [
        ({"device": "managed"}, True),
        ({"device": "byod", "mfaVerified": True, "location": "SG"}, True),
        ({"device": "byod", "mfaVerified": True, "location": "US"}, False),
        ({}, False),
    ],
)
def test_contextual_policy_nests_groups(context, allowed):
    p = policy("ctx", PolicyType.CONTEXTUAL, {
        "operator": "OR",
        "conditions": [
            {"field": "device", "op": "eq", "value": "managed"},
            {"operator": "AND", "conditions": [
                {"field": "mfaVerified", "value": True},
                {"field": "location", "op": "in", "value": ["ID", "SG"]},
            ]},
        ],
    })
    verdict = evaluate([p], RequestContext.model_validate(context))
    assert (verdict.effect == PolicyEffect.ALLOW) is allowed


def test_contextual_not_negates_conjunction():
    p = policy("not-kiosk", PolicyType.CONTEXTUAL, {
        "operator": "NOT", "conditions": [{"field": "device", "value": "kiosk"}],
    })
    assert evaluate([p], RequestContext(device="laptop")).effect == PolicyEffect.ALLOW
    assert evaluate([p], RequestContext(device="kiosk")).effect == PolicyEffect.DENY


@pytest.mark.parametrize(
    "rules, context, allowed",
    [
        ({"maxLevel": 20}, {"hierarchyLevel": 10}, True),
        ({"maxLevel": 20}, {"hierarchyLevel": 30}, False),
        ({"maxLevel": 20}, {}, False),
        ({"requireSuperior": True}, {"hierarchyLevel": 10, "resourceOwnerLevel": 20}, True),
        ({"requireSuperior": True}, {"hierarchyLevel": 20, "resourceOwnerLevel": 20}, False),
        ({"requireSuperior": True, "allowSameLevel": True}, {"hierarchyLevel": 20, "resourceOwnerLevel": 20}, True),
        ({"requireSuperior": True}, {"hierarchyLevel": 10}, False),
        ({"sameDepartment": True}, {"department": "math", "resourceOwnerDepartment": "math"}, True),
        ({"sameDepartment": True}, {"department": "math", "resourceOwnerDepartment": "art"}, False),
        ({"sameDepartment": True}, {}, False),
    ],
)
def test_hierarchical_policy(rules, context, allowed):
    verdict = evaluate(
        [policy("rank", PolicyType.HIERARCHICAL, rules)], RequestContext.model_validate(context)
    )
    assert (verdict.effect == PolicyEffect.ALLOW) is allowed


# ----------------------------------------------------------------------------
# Ordering and composition
# ----------------------------------------------------------------------------

def test_order_is_priority_descending_then_code():
    policies = [
        policy("b", PolicyType.TIME_BASED, {}, priority=5),
        policy("a", PolicyType.TIME_BASED, {}, priority=5),
        policy("z", PolicyType.TIME_BASED, {}, priority=10),
        policy("c", PolicyType.TIME_BASED, {}, priority=0),
    ]
    assert [p.code for p in order_policies(policies)] == ["z", "a", "b", "c"]


def test_first_denying_policy_in_order_is_reported():
    deny_low = policy("aaa-low", PolicyType.HIERARCHICAL, {"maxLevel": 1}, priority=1)
    deny_high = policy("zzz-high", PolicyType.HIERARCHICAL, {"maxLevel": 1}, priority=9)
    allow_top = policy("top", PolicyType.HIERARCHICAL, {"maxLevel": 100}, priority=50)

    verdict = evaluate([deny_low, allow_top, deny_high], RequestContext(hierarchy_level=5))
    assert verdict.policy_code == "zzz-high"
    assert verdict.evaluated == ("top", "zzz-high")


def test_equal_priority_tie_breaks_on_code():
    first = policy("alpha", PolicyType.HIERARCHICAL, {"maxLevel": 1})
    second = policy("beta", PolicyType.HIERARCHICAL, {"maxLevel": 1})
    assert evaluate([second, first], RequestContext(hierarchy_level=5)).policy_code == "alpha"


def test_inactive_and_deleted_policies_are_skipped():
    strict = {"maxLevel": 1}
    verdict = evaluate(
        [
            policy("off", PolicyType.HIERARCHICAL, strict, is_active=False),
            policy("gone", PolicyType.HIERARCHICAL, strict, deleted_at=datetime(2025, 1, 1, tzinfo=UTC)),
        ],
        RequestContext(hierarchy_level=5),
    )
    assert verdict.effect == PolicyEffect.NEUTRAL
    assert verdict.evaluated == ()


def test_no_policies_is_neutral():
    assert evaluate([], RequestContext()).effect == PolicyEffect.NEUTRAL


def test_invalid_stored_rules_deny():
    verdict = evaluate([policy("broken", PolicyType.TIME_BASED, {"allowedHours": "bogus"})], RequestContext())
    assert verdict.effect == PolicyEffect.DENY
    assert verdict.policy_code == "broken"
    assert verdict.reason == "policy rules invalid"
