"""Rule-based routing of node output to output ports.

A RouterConfig holds ordered rules; each rule ANDs or ORs its conditions and
names the output port it fires. In "first-match" mode scanning stops at the
first matching rule, in "all-matches" mode every matching rule's port is
returned in declaration order.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

ComparisonOperator = Literal[
    "equals",
    "notEquals",
    "contains",
    "notContains",
    "startsWith",
    "endsWith",
    "greaterThan",
    "lessThan",
    "greaterOrEqual",
    "lessOrEqual",
    "isEmpty",
    "isNotEmpty",
    "exists",
    "notExists",
    "matches",
    "isTrue",
    "isFalse",
]
LogicalOperator = Literal["AND", "OR"]
CoercionType = Literal["string", "number", "boolean"]

_INDEXED_SEGMENT = re.compile(r"^(.+)\[(\d+)\]$")


class RouterCondition(BaseModel):
    """Single comparison of a field against a value"""

    field: str
    operator: ComparisonOperator
    value: Any = None
    type: CoercionType | None = None

    @field_validator("type", mode="before")
    @classmethod
    def empty_type_is_none(cls, v):
        return v or None


class RouterRule(BaseModel):
    """Conditions joined by AND/OR that fire one output port"""

    model_config = {"populate_by_name": True}

    id: str
    name: str | None = None
    conditions: list[RouterCondition]
    logic: LogicalOperator = "AND"
    output_port: str = Field(alias="outputPort")


class RouterConfig(BaseModel):
    model_config = {"populate_by_name": True}

    rules: list[RouterRule] = Field(default_factory=list)
    default_output: str | None = Field(default=None, alias="defaultOutput")
    mode: Literal["first-match", "all-matches"] = "first-match"


class RouterResult(BaseModel):
    """Ports selected by a routing call"""

    matched: bool
    output_ports: list[str] = Field(default_factory=list)
    matched_rules: list[str] = Field(default_factory=list)
    data: Any = None


def get_field_value(data: Any, field: str) -> Any:
    """Read a dotted path such as "user.tags[0].name". Missing segments give None."""
    if not field:
        return data

    value = data
    for part in field.split("."):
        match = _INDEXED_SEGMENT.match(part)
        try:
            if match:
                name, index = match.groups()
                value = value[name][int(index)]
            else:
                value = value[part]
        except (KeyError, IndexError, TypeError):
            return None
        if value is None:
            return None
    return value


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return math.nan
    return math.nan


def _to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _coerce(value: Any, type_: CoercionType | None) -> Any:
    if type_ == "number":
        return _to_number(value)
    if type_ == "boolean":
        return bool(value)
    if type_ == "string":
        return _to_string(value)
    return value


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, list | tuple | dict):
        return len(value) == 0
    return False


def _contains(left: Any, right: Any) -> bool | None:
    """None when the left side is not a container."""
    if isinstance(left, str):
        return _to_string(right) in left
    if isinstance(left, list | tuple):
        return right in left
    return None


class ConditionalRouter:
    """Evaluate routing rules against a data payload."""

    @classmethod
    def route(cls, data: Any, config: RouterConfig | dict) -> RouterResult:
        """Return the output ports whose rules match data."""
        if not isinstance(config, RouterConfig):
            config = RouterConfig.model_validate(config)

        ports: list[str] = []
        matched_rules: list[str] = []
        for rule in config.rules:
            if cls.evaluate_rule(data, rule):
                ports.append(rule.output_port)
                matched_rules.append(rule.id)
                if config.mode == "first-match":
                    break

        if not ports and config.default_output:
            ports.append(config.default_output)

        return RouterResult(
            matched=bool(ports), output_ports=ports, matched_rules=matched_rules, data=data
        )

    @classmethod
    def evaluate_rule(cls, data: Any, rule: RouterRule | dict) -> bool:
        if not isinstance(rule, RouterRule):
            rule = RouterRule.model_validate(rule)
        results = [cls.evaluate_condition(data, c) for c in rule.conditions]
        if rule.logic == "OR":
            return any(results)
        return all(results)

    @classmethod
    def evaluate_condition(cls, data: Any, condition: RouterCondition | dict) -> bool:
        """
        Evaluate one condition.

        Comparisons between incompatible types return False instead of raising.
        """
        if not isinstance(condition, RouterCondition):
            condition = RouterCondition.model_validate(condition)

        left = _coerce(get_field_value(data, condition.field), condition.type)
        right = _coerce(condition.value, condition.type)
        op = condition.operator

        try:
            if op == "equals":
                return left == right
            elif op == "notEquals":
                return left != right
            elif op == "contains":
                return bool(_contains(left, right))
            elif op == "notContains":
                result = _contains(left, right)
                return True if result is None else not result
            elif op == "startsWith":
                return isinstance(left, str) and left.startswith(_to_string(right))
            elif op == "endsWith":
                return isinstance(left, str) and left.endswith(_to_string(right))
            elif op == "greaterThan":
                return left > right
            elif op == "lessThan":
                return left < right
            elif op == "greaterOrEqual":
                return left >= right
            elif op == "lessOrEqual":
                return left <= right
            elif op == "isEmpty":
                return _is_empty(left)
            elif op == "isNotEmpty":
                return not _is_empty(left)
            elif op == "exists":
                return left is not None
            elif op == "notExists":
                return left is None
            elif op == "matches":
                if not isinstance(left, str) or not isinstance(right, str):
                    return False
                try:
                    return re.search(right, left) is not None
                except re.error:
                    logger.error(f"Invalid regex in routing condition: {right!r}")
                    return False
            elif op == "isTrue":
                return left is True or left == "true" or (not isinstance(left, bool) and left == 1)
            elif op == "isFalse":
                return left is False or left == "false" or (not isinstance(left, bool) and left == 0)
            else:
                logger.warning(f"Unknown routing operator: {op}")
                return False
        except (TypeError, AttributeError):
            return False

    # ========== Builders ==========

    @staticmethod
    def condition(field: str, operator: ComparisonOperator, value: Any = None) -> RouterCondition:
        return RouterCondition(field=field, operator=operator, value=value)

    @staticmethod
    def rule(
        id: str,
        output_port: str,
        conditions: list[RouterCondition],
        logic: LogicalOperator = "AND",
    ) -> RouterRule:
        return RouterRule(id=id, output_port=output_port, conditions=conditions, logic=logic)

    # ========== Common shapes ==========

    @classmethod
    def route_by_value(
        cls,
        data: Any,
        field: str,
        mapping: dict[str, str],
        default_output: str | None = None,
    ) -> RouterResult:
        """Exact-value lookup; the field value is compared in string form."""
        value = get_field_value(data, field)
        port = mapping.get(_to_string(value)) or default_output
        return RouterResult(
            matched=port is not None,
            output_ports=[port] if port else [],
            matched_rules=[_to_string(value)] if port else [],
            data=data,
        )

    @classmethod
    def route_by_type(cls, data: Any, field: str) -> RouterResult:
        """Route to a port named after the value's type (array, object, string, ...)."""
        type_name = type_name_of(get_field_value(data, field))
        return RouterResult(
            matched=True, output_ports=[type_name], matched_rules=[type_name], data=data
        )

    @classmethod
    def route_by_boolean(
        cls, data: Any, field: str, true_port: str = "true", false_port: str = "false"
    ) -> RouterResult:
        truthy = bool(get_field_value(data, field))
        return RouterResult(
            matched=True,
            output_ports=[true_port if truthy else false_port],
            matched_rules=["true" if truthy else "false"],
            data=data,
        )

    @classmethod
    def route_by_range(cls, data: Any, field: str, ranges: list[dict[str, Any]]) -> RouterResult:
        """
        First range whose inclusive bounds contain the value wins.

        Each range is {"min": n?, "max": n?, "output": port}; a missing bound is open.
        """
        value = _to_number(get_field_value(data, field))
        for r in ranges:
            low, high = r.get("min"), r.get("max")
            if (low is None or value >= low) and (high is None or value <= high):
                return RouterResult(
                    matched=True,
                    output_ports=[r["output"]],
                    matched_rules=[f"{low}-{high}"],
                    data=data,
                )
        return RouterResult(matched=False, data=data)

    @classmethod
    def split_array(
        cls, data: Any, field: str, chunk_size: int, output_prefix: str = "output"
    ) -> RouterResult:
        """Split a list field into chunks, one port per chunk ({prefix}1, {prefix}2, ...)."""
        array = get_field_value(data, field)
        if not isinstance(array, list):
            return RouterResult(matched=False, data=data)
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        chunks = [array[i : i + chunk_size] for i in range(0, len(array), chunk_size)]
        ports = [f"{output_prefix}{i + 1}" for i in range(len(chunks))]
        return RouterResult(matched=True, output_ports=ports, matched_rules=ports, data=chunks)

    # ========== Validation ==========

    @classmethod
    def validate_config(cls, config: dict | RouterConfig) -> tuple[bool, list[str]]:
        """
        Check a router config without raising.

        Returns:
            (valid, errors) with human-readable error strings
        """
        if isinstance(config, RouterConfig):
            config = config.model_dump(by_alias=True)

        errors: list[str] = []
        rules = config.get("rules") or []
        if not rules:
            errors.append("Router must have at least one rule")

        for rule in rules:
            rule_id = rule.get("id")
            if not rule_id:
                errors.append("Each rule must have an id")
            if not (rule.get("outputPort") or rule.get("output_port")):
                errors.append(f'Rule "{rule_id}" must have an outputPort')
            conditions = rule.get("conditions") or []
            if not conditions:
                errors.append(f'Rule "{rule_id}" must have at least one condition')
            for condition in conditions:
                if not condition.get("field"):
                    errors.append(f'Condition in rule "{rule_id}" must have a field')
                if not condition.get("operator"):
                    errors.append(f'Condition in rule "{rule_id}" must have an operator')

        return not errors, errors


def type_name_of(value: Any) -> str:
    """Type names used by route_by_type."""
    if value is None:
        return "undefined"
    if isinstance(value, list | tuple):
        return "array"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    return "function" if callable(value) else "object"
