"""
Policy rule models and the policy evaluator.

Every PermissionPolicy stores a JSON rule payload whose shape depends on its
policy_type. The payload is parsed into one of the typed rule models below
when a policy is written (parse_rules) and again when it is evaluated, so the
evaluator only ever works with a closed set of rule variants.

Evaluation order is priority descending, then code ascending. The first
policy that denies wins. If none deny and at least one was evaluated the
verdict is ALLOW; with nothing to evaluate it is NEUTRAL and the caller
keeps its grant-based answer.
"""
import re
from dataclasses import dataclass
from datetime import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.core.exceptions import ValidationError
from app.core.security import ip_in_any, validate_ip_pattern
from app.core.temporal import as_utc, utcnow
from app.features.permissions.models import PolicyType
from app.features.permissions.schemas import RequestContext
from app.utils import get_logger


log = get_logger(__name__)


DAYS = ["MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY"]
_HOURS = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)-([01]\d|2[0-3]):([0-5]\d)$")

OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "nin", "contains", "exists")
Operator = Literal["eq", "neq", "gt", "gte", "lt", "lte", "in", "nin", "contains", "exists"]


# ============================================================================
# Rule Models
# ============================================================================

class _Rules(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)


class TimeBasedRules(_Rules):
    """
    Allowed weekdays and hour window in a timezone.

    Example: {"allowedDays": ["MONDAY", "FRIDAY"], "allowedHours": "09:00-17:00",
              "timezone": "Asia/Jakarta"}
    A window whose start is after its end wraps past midnight.
    """
    allowed_days: List[str] = Field(default_factory=list)
    allowed_hours: Optional[str] = None
    timezone: str = "UTC"

    @field_validator("allowed_days")
    @classmethod
    def normalize_days(cls, v: List[str]) -> List[str]:
        days = []
        for day in v:
            name = day.strip().upper()
            match = next((d for d in DAYS if d == name or d[:3] == name), None)
            if match is None:
                raise ValueError(f"Unknown day: {day}")
            days.append(match)
        return days

    @field_validator("allowed_hours")
    @classmethod
    def hours_format(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _HOURS.match(v):
            raise ValueError("allowedHours must look like HH:MM-HH:MM")
        return v

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def has_constraint(self):
        if not self.allowed_days and not self.allowed_hours:
            raise ValueError("Time-based rules need allowedDays or allowedHours")
        return self

    def window(self) -> Optional[Tuple[time, time]]:
        if not self.allowed_hours:
            return None
        m = _HOURS.match(self.allowed_hours)
        return time(int(m.group(1)), int(m.group(2))), time(int(m.group(3)), int(m.group(4)))


class LocationBasedRules(_Rules):
    """
    IP and location allow/deny lists.

    IP entries may be exact addresses, wildcard patterns ("192.168.1.*") or
    CIDR networks. Deny lists are checked first.
    """
    allowed_ips: List[str] = Field(default_factory=list)
    denied_ips: List[str] = Field(default_factory=list)
    allowed_locations: List[str] = Field(default_factory=list)
    denied_locations: List[str] = Field(default_factory=list)

    @field_validator("allowed_ips", "denied_ips")
    @classmethod
    def ip_patterns(cls, v: List[str]) -> List[str]:
        return [validate_ip_pattern(p) for p in v]

    @model_validator(mode="after")
    def has_constraint(self):
        if not (self.allowed_ips or self.denied_ips or self.allowed_locations or self.denied_locations):
            raise ValueError("Location-based rules need at least one IP or location list")
        return self


class AttributeBasedRules(_Rules):
    """
    Key/value predicates over the request context; all must hold.

    Example: {"attributes": {"mfaVerified": true, "device": {"in": ["managed", "kiosk"]}}}
    """
    attributes: Dict[str, Any] = Field(..., min_length=1)

    @field_validator("attributes")
    @classmethod
    def operator_shape(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        for key, expected in v.items():
            if isinstance(expected, dict):
                if len(expected) != 1 or next(iter(expected)) not in OPERATORS:
                    raise ValueError(f"Attribute '{key}' must use exactly one of {', '.join(OPERATORS)}")
                op, value = next(iter(expected.items()))
                _check_operand(op, value)
        return v


class ContextCondition(_Rules):
    field: str = Field(..., min_length=1)
    op: Operator = "eq"
    value: Any = None

    @model_validator(mode="after")
    def operand_shape(self):
        _check_operand(self.op, self.value)
        return self


class ContextualRules(_Rules):
    """
    Composite predicate: AND / OR over conditions, or NOT of their conjunction.

    Example: {"operator": "OR", "conditions": [
                 {"field": "device", "op": "eq", "value": "managed"},
                 {"operator": "AND", "conditions": [
                     {"field": "mfaVerified", "value": true},
                     {"field": "location", "op": "in", "value": ["ID", "SG"]}]}]}
    """
    operator: Literal["AND", "OR", "NOT"] = "AND"
    conditions: List[Union[ContextCondition, "ContextualRules"]] = Field(..., min_length=1)


ContextualRules.model_rebuild()


class HierarchicalRules(_Rules):
    """
    Restrictions on the requester's rank relative to the resource owner.

    maxLevel: requester hierarchy level must be <= maxLevel
    requireSuperior: requester level must be lower than the owner's
                     (or equal when allowSameLevel)
    sameDepartment: requester and owner department must match
    """
    max_level: Optional[int] = None
    require_superior: bool = False
    allow_same_level: bool = False
    same_department: bool = False

    @model_validator(mode="after")
    def has_constraint(self):
        if self.max_level is None and not self.require_superior and not self.same_department:
            raise ValueError("Hierarchical rules need maxLevel, requireSuperior or sameDepartment")
        return self


PolicyRules = Union[TimeBasedRules, LocationBasedRules, AttributeBasedRules, ContextualRules, HierarchicalRules]

RULE_MODELS: Dict[PolicyType, type] = {
    PolicyType.TIME_BASED: TimeBasedRules,
    PolicyType.LOCATION_BASED: LocationBasedRules,
    PolicyType.ATTRIBUTE_BASED: AttributeBasedRules,
    PolicyType.CONTEXTUAL: ContextualRules,
    PolicyType.HIERARCHICAL: HierarchicalRules,
}


def _check_operand(op: str, value: Any) -> None:
    if op in ("in", "nin") and not isinstance(value, (list, tuple)):
        raise ValueError(f"Operator '{op}' needs a list value")


def parse_rules(policy_type: PolicyType, raw: Dict[str, Any]) -> PolicyRules:
    """
    Validate a raw rule payload against the model for policy_type.

    Raises:
        ValidationError: If the payload does not fit the policy type
    """
    model = RULE_MODELS[PolicyType(policy_type)]
    try:
        return model.model_validate(raw)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'rules'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {PolicyType(policy_type).value} rules: {details}")


def dump_rules(rules: PolicyRules) -> Dict[str, Any]:
    """Serialize parsed rules back to the stored camelCase JSON."""
    return rules.model_dump(by_alias=True, exclude_none=True)


# ============================================================================
# Predicates
# ============================================================================

def lookup(values: Dict[str, Any], path: str) -> Any:
    """Read a context value; dotted paths walk into nested dicts."""
    if path in values:
        return values[path]
    current: Any = values
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def compare(op: str, actual: Any, expected: Any) -> bool:
    try:
        if op == "eq":
            return actual == expected
        if op == "neq":
            return actual != expected
        if op == "exists":
            return (actual is not None) == bool(expected)
        if op == "in":
            return actual in expected
        if op == "nin":
            return actual not in expected
        if actual is None:
            return False
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        if op == "lte":
            return actual <= expected
        if op == "contains":
            return expected in actual
    except TypeError:
        return False
    return False


# ============================================================================
# Type-specific evaluation
# ============================================================================

@dataclass(frozen=True)
class RuleOutcome:
    allowed: bool
    reason: str = ""


def _evaluate_time(rules: TimeBasedRules, context: RequestContext) -> RuleOutcome:
    instant = as_utc(context.timestamp) or utcnow()
    local = instant.astimezone(ZoneInfo(rules.timezone))

    day = DAYS[local.weekday()]
    if rules.allowed_days and day not in rules.allowed_days:
        return RuleOutcome(False, f"access not allowed on {day} ({rules.timezone})")

    window = rules.window()
    if window:
        start, end = window
        now = local.time().replace(tzinfo=None)
        if start <= end:
            inside = start <= now <= end
        else:
            inside = now >= start or now <= end
        if not inside:
            return RuleOutcome(
                False, f"access allowed only between {rules.allowed_hours} {rules.timezone}, "
                       f"request at {local.strftime('%H:%M')}"
            )
    return RuleOutcome(True)


def _evaluate_location(rules: LocationBasedRules, context: RequestContext) -> RuleOutcome:
    ip = context.ip_address
    location = (context.location or "").strip().lower() or None

    if rules.denied_ips and ip_in_any(ip, rules.denied_ips):
        return RuleOutcome(False, f"IP {ip} is denied")
    if rules.allowed_ips and not ip_in_any(ip, rules.allowed_ips):
        return RuleOutcome(False, f"IP {ip or 'unknown'} is not in the allowed list")

    denied = {loc.lower() for loc in rules.denied_locations}
    allowed = {loc.lower() for loc in rules.allowed_locations}
    if location in denied:
        return RuleOutcome(False, f"location {context.location} is denied")
    if allowed and location not in allowed:
        return RuleOutcome(False, f"location {context.location or 'unknown'} is not in the allowed list")
    return RuleOutcome(True)


def _evaluate_attributes(rules: AttributeBasedRules, context: RequestContext) -> RuleOutcome:
    values = context.attributes()
    for key, expected in rules.attributes.items():
        actual = lookup(values, key)
        if isinstance(expected, dict):
            op, operand = next(iter(expected.items()))
        else:
            op, operand = "eq", expected
        if not compare(op, actual, operand):
            return RuleOutcome(False, f"attribute {key} does not satisfy {op} {operand!r}")
    return RuleOutcome(True)


def _contextual_holds(group: ContextualRules, values: Dict[str, Any]) -> bool:
    results = (
        _contextual_holds(c, values) if isinstance(c, ContextualRules)
        else compare(c.op, lookup(values, c.field), c.value)
        for c in group.conditions
    )
    if group.operator == "OR":
        return any(results)
    if group.operator == "NOT":
        return not all(results)
    return all(results)


def _evaluate_contextual(rules: ContextualRules, context: RequestContext) -> RuleOutcome:
    if _contextual_holds(rules, context.attributes()):
        return RuleOutcome(True)
    return RuleOutcome(False, "contextual conditions not met")


def _evaluate_hierarchical(rules: HierarchicalRules, context: RequestContext) -> RuleOutcome:
    level = context.hierarchy_level
    if rules.max_level is not None or rules.require_superior:
        if level is None:
            return RuleOutcome(False, "requester hierarchy level unknown")
    if rules.max_level is not None and level > rules.max_level:
        return RuleOutcome(False, f"requester level {level} exceeds {rules.max_level}")

    if rules.require_superior:
        owner = context.resource_owner_level
        if owner is None:
            return RuleOutcome(False, "resource owner hierarchy level unknown")
        if level > owner or (level == owner and not rules.allow_same_level):
            return RuleOutcome(False, f"requester level {level} is not above owner level {owner}")

    if rules.same_department:
        if not context.department or context.department != context.resource_owner_department:
            return RuleOutcome(False, "requester is not in the resource owner's department")
    return RuleOutcome(True)


EVALUATORS: Dict[type, Callable[[Any, RequestContext], RuleOutcome]] = {
    TimeBasedRules: _evaluate_time,
    LocationBasedRules: _evaluate_location,
    AttributeBasedRules: _evaluate_attributes,
    ContextualRules: _evaluate_contextual,
    HierarchicalRules: _evaluate_hierarchical,
}


# ============================================================================
# Evaluator
# ============================================================================

class PolicyEffect(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class PolicyVerdict:
    effect: PolicyEffect
    policy_code: Optional[str] = None
    reason: Optional[str] = None
    evaluated: Tuple[str, ...] = ()


def is_policy_active(policy) -> bool:
    return bool(policy.is_active) and getattr(policy, "deleted_at", None) is None


def order_policies(policies: Iterable) -> List:
    """Priority descending, then code ascending."""
    return sorted(policies, key=lambda p: (-p.priority, p.code))


def evaluate(policies: Iterable, context: RequestContext) -> PolicyVerdict:
    """
    Evaluate policies against a request context.

    Inactive or soft-deleted policies are skipped. A policy whose stored rules
    no longer parse denies.
    """
    evaluated: List[str] = []
    for policy in order_policies(p for p in policies if is_policy_active(p)):
        evaluated.append(policy.code)
        try:
            rules = parse_rules(policy.policy_type, policy.rules)
        except ValidationError as e:
            log.error("Policy %s has invalid rules: %s", policy.code, e.message)
            return PolicyVerdict(PolicyEffect.DENY, policy.code, "policy rules invalid", tuple(evaluated))

        outcome = EVALUATORS[type(rules)](rules, context)
        if not outcome.allowed:
            log.debug("Policy %s denied: %s", policy.code, outcome.reason)
            return PolicyVerdict(PolicyEffect.DENY, policy.code, outcome.reason, tuple(evaluated))

    if evaluated:
        return PolicyVerdict(PolicyEffect.ALLOW, evaluated=tuple(evaluated))
    return PolicyVerdict(PolicyEffect.NEUTRAL)
