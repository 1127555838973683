"""JSON Schema validation and coercion for node data (helpers.validation).

Schemas are JSON Schema documents. For convenience a property may carry
"required": true, which is folded into its parent's "required" list before
validation.
"""

from __future__ import annotations

import copy
import logging
import math
from typing import Any

import jsonschema

logger = logging.getLogger(__name__)

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
URL_PATTERN = r"^https?://.+"
UUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


def _normalize_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Fold per-property required flags into JSON Schema "required" lists."""
    schema = copy.deepcopy(schema)
    properties = schema.get("properties")
    if isinstance(properties, dict):
        required = list(schema.get("required", []))
        for name, prop in properties.items():
            if isinstance(prop, dict):
                flag = prop.pop("required", None)
                if flag is True and name not in required:
                    required.append(name)
                properties[name] = _normalize_schema(prop)
        if required:
            schema["required"] = required
    if isinstance(schema.get("items"), dict):
        schema["items"] = _normalize_schema(schema["items"])
    return schema


def _primary_type(schema: dict[str, Any]) -> str | None:
    type_ = schema.get("type")
    if isinstance(type_, list):
        return type_[0] if type_ else None
    return type_


def coerce_value(value: Any, schema: dict[str, Any]) -> Any:
    """Convert one value toward the schema's (first) type; unconvertible values are kept."""
    if value is None:
        return value
    type_ = _primary_type(schema)
    if type_ == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
    if type_ in ("number", "integer"):
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int | float):
            return int(value) if type_ == "integer" and float(value).is_integer() else value
        try:
            number = float(str(value).strip())
        except ValueError:
            return value
        if math.isnan(number):
            return value
        return int(number) if number.is_integer() else number
    if type_ == "boolean":
        if isinstance(value, str):
            return value.lower() == "true" or value == "1"
        return bool(value)
    if type_ == "array":
        return value if isinstance(value, list) else [value]
    if type_ == "object":
        return value if isinstance(value, dict) else {}
    return value


class SchemaValidator:
    """Validate, default and coerce data against JSON Schema."""

    @staticmethod
    def validate(data: Any, schema: dict[str, Any]) -> dict[str, Any]:
        """
        Validate data.

        Returns:
            {"valid": bool, "errors": [{path, message, value, expected}], "data": data}
        """
        normalized = _normalize_schema(schema)
        validator_cls = jsonschema.validators.validator_for(normalized)
        validator = validator_cls(normalized)

        errors = []
        for error in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
            parts = [str(p) for p in error.absolute_path]
            if error.validator == "required":
                # one error per missing property; its name is quoted in the message
                missing = next(
                    (name for name in error.validator_value if f"'{name}'" in error.message),
                    None,
                )
                if missing:
                    parts.append(missing)
            path = ".".join(parts) or "(root)"
            errors.append(
                {
                    "path": path,
                    "message": error.message,
                    "value": error.instance if error.validator != "required" else None,
                    "expected": str(error.validator_value) if error.validator == "type" else None,
                }
            )
        return {"valid": not errors, "errors": errors, "data": data}

    @staticmethod
    def apply_defaults(data: dict[str, Any], schema: dict[str, Any]) -> dict[str, Any]:
        result = dict(data)
        for key, prop in (schema.get("properties") or {}).items():
            if key not in result and "default" in prop:
                result[key] = copy.deepcopy(prop["default"])
        return result

    @staticmethod
    def coerce(data: dict[str, Any], schema: dict[str, Any]) -> dict[str, Any]:
        result = dict(data)
        for key, prop in (schema.get("properties") or {}).items():
            if key in result:
                result[key] = coerce_value(result[key], prop)
        return result

    @classmethod
    def validate_and_format(cls, data: Any, schema: dict[str, Any]) -> dict[str, Any]:
        """Validate and render errors as "• path: message" lines."""
        result = cls.validate(data, schema)
        if result["valid"]:
            return {"valid": True, "data": result["data"]}
        message = "\n".join(f"• {e['path']}: {e['message']}" for e in result["errors"])
        return {"valid": False, "error_message": message, "errors": result["errors"]}

    # ========== Builders ==========

    @staticmethod
    def create_schema(properties: dict[str, dict[str, Any]]) -> dict[str, Any]:
        return {"type": "object", "properties": properties, "additionalProperties": True}

    @staticmethod
    def string(**options: Any) -> dict[str, Any]:
        return {"type": "string", **options}

    @staticmethod
    def number(**options: Any) -> dict[str, Any]:
        return {"type": "number", **options}

    @staticmethod
    def boolean(**options: Any) -> dict[str, Any]:
        return {"type": "boolean", **options}

    @staticmethod
    def array(items: dict[str, Any] | None = None, **options: Any) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": "array", **options}
        if items is not None:
            schema["items"] = items
        return schema

    @staticmethod
    def object(properties: dict[str, dict[str, Any]] | None = None, **options: Any) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": "object", **options}
        if properties is not None:
            schema["properties"] = properties
        return schema

    @staticmethod
    def enum(values: list[Any], **options: Any) -> dict[str, Any]:
        return {"enum": list(values), **options}

    @staticmethod
    def email(**options: Any) -> dict[str, Any]:
        return {"type": "string", "pattern": EMAIL_PATTERN, **options}

    @staticmethod
    def url(**options: Any) -> dict[str, Any]:
        return {"type": "string", "pattern": URL_PATTERN, **options}

    @staticmethod
    def uuid(**options: Any) -> dict[str, Any]:
        return {"type": "string", "pattern": UUID_PATTERN, **options}
