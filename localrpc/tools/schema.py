"""
Tool Schemas
------------
Schema validators for tool input.

A validator is anything with:
- validate(raw) -> ValidationOutcome (may also return an awaitable)
- describe() -> JSON Schema dict

Expected validation failures are returned as values, not raised.
Three implementations ship here: ToolSchema (a flat parameter list rendered
as JSON Schema), JsonSchemaValidator (a JSON Schema dict, checked with
jsonschema) and PydanticSchema (a pydantic model).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type, runtime_checkable
import re

import jsonschema
from pydantic import BaseModel, ValidationError


@dataclass(frozen=True)
class ValidationIssue:
    """A single schema violation."""
    path: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message}

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


@dataclass(frozen=True)
class ValidationOutcome:
    """Either a validated value or the issues that prevented one."""
    value: Any = None
    issues: Tuple[ValidationIssue, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.issues

    @classmethod
    def success(cls, value: Any) -> "ValidationOutcome":
        return cls(value=value)

    @classmethod
    def failure(cls, *issues: ValidationIssue) -> "ValidationOutcome":
        if not issues:
            issues = (ValidationIssue("", "invalid input"),)
        return cls(issues=tuple(issues))


@runtime_checkable
class SchemaValidator(Protocol):
    """Capability interface implemented per schema technology."""

    def validate(self, raw: Any) -> ValidationOutcome:
        ...

    def describe(self) -> Dict[str, Any]:
        ...


class ParameterType(str, Enum):
    """Supported parameter types."""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    ANY = "any"


def _matches_type(value: Any, expected: ParameterType) -> bool:
    # bool is an int subclass; never accept it as a number
    if expected in (ParameterType.INTEGER, ParameterType.NUMBER) and isinstance(value, bool):
        return False
    type_map = {
        ParameterType.STRING: str,
        ParameterType.INTEGER: int,
        ParameterType.NUMBER: (int, float),
        ParameterType.BOOLEAN: bool,
        ParameterType.ARRAY: (list, tuple),
        ParameterType.OBJECT: dict,
        ParameterType.ANY: object,
    }
    return isinstance(value, type_map[expected])


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""
    name: str
    type: ParameterType
    description: str = ""
    required: bool = True
    default: Optional[Any] = None
    enum: Optional[List[Any]] = None  # Allowed values
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None  # Regex for strings

    def to_json_schema(self) -> Dict:
        """Convert to JSON Schema format."""
        schema: Dict[str, Any] = {}
        if self.type != ParameterType.ANY:
            schema["type"] = self.type.value
        if self.description:
            schema["description"] = self.description

        if self.enum:
            schema["enum"] = self.enum
        if self.min_value is not None:
            schema["minimum"] = self.min_value
        if self.max_value is not None:
            schema["maximum"] = self.max_value
        if self.type == ParameterType.ARRAY:
            length_keys = ("minItems", "maxItems")
        else:
            length_keys = ("minLength", "maxLength")
        if self.min_length is not None:
            schema[length_keys[0]] = self.min_length
        if self.max_length is not None:
            schema[length_keys[1]] = self.max_length
        if self.pattern:
            schema["pattern"] = self.pattern
        if self.default is not None:
            schema["default"] = self.default

        return schema

    def check(self, value: Any) -> Optional[str]:
        """Return a message describing why `value` is invalid, or None."""
        if not _matches_type(value, self.type):
            return f"expected {self.type.value}, got {type(value).__name__}"

        if self.enum and value not in self.enum:
            return f"must be one of {self.enum}"

        if self.type in (ParameterType.INTEGER, ParameterType.NUMBER):
            if self.min_value is not None and value < self.min_value:
                return f"must be >= {self.min_value}"
            if self.max_value is not None and value > self.max_value:
                return f"must be <= {self.max_value}"

        if self.type in (ParameterType.STRING, ParameterType.ARRAY):
            if self.min_length is not None and len(value) < self.min_length:
                return f"length must be >= {self.min_length}"
            if self.max_length is not None and len(value) > self.max_length:
                return f"length must be <= {self.max_length}"

        if self.type == ParameterType.STRING and self.pattern:
            if re.search(self.pattern, value) is None:
                return f"does not match pattern {self.pattern!r}"

        return None


@dataclass
class ToolSchema:
    """JSON Schema for tool parameters."""
    parameters: List[ToolParameter] = field(default_factory=list)
    allow_additional: bool = False

    def to_json_schema(self) -> Dict:
        """Convert to full JSON Schema."""
        properties = {}
        required = []

        for param in self.parameters:
            properties[param.name] = param.to_json_schema()
            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
            "additionalProperties": self.allow_additional,
        }

    def describe(self) -> Dict[str, Any]:
        return self.to_json_schema()

    def validate(self, raw: Any) -> ValidationOutcome:
        """
        Check `raw` against every parameter and collect all violations.

        On success the value is a new dict with defaults filled in for
        missing optional parameters.
        """
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            return ValidationOutcome.failure(
                ValidationIssue("", f"expected object, got {type(raw).__name__}")
            )

        issues: List[ValidationIssue] = []
        normalized: Dict[str, Any] = {}

        for param in self.parameters:
            if param.name not in raw:
                if param.required:
                    issues.append(ValidationIssue(param.name, "missing required parameter"))
                elif param.default is not None:
                    normalized[param.name] = param.default
                continue

            message = param.check(raw[param.name])
            if message:
                issues.append(ValidationIssue(param.name, message))
            else:
                normalized[param.name] = raw[param.name]

        known_params = {p.name for p in self.parameters}
        for arg_name in raw:
            if arg_name in known_params:
                continue
            if self.allow_additional:
                normalized[arg_name] = raw[arg_name]
            else:
                issues.append(ValidationIssue(arg_name, "unknown parameter"))

        if issues:
            return ValidationOutcome.failure(*issues)
        return ValidationOutcome.success(normalized)


class PydanticSchema:
    """Validator backed by a pydantic model; handlers receive the model instance."""

    def __init__(self, model: Type[BaseModel]):
        self.model = model

    def validate(self, raw: Any) -> ValidationOutcome:
        try:
            return ValidationOutcome.success(self.model.model_validate(raw))
        except ValidationError as e:
            issues = [
                ValidationIssue(
                    ".".join(str(part) for part in error.get("loc", ())),
                    error.get("msg", "invalid value"),
                )
                for error in e.errors()
            ]
            return ValidationOutcome.failure(*issues)

    def describe(self) -> Dict[str, Any]:
        return self.model.model_json_schema()

    def __repr__(self) -> str:
        return f"PydanticSchema({self.model.__name__})"


class JsonSchemaValidator:
    """
    Validator for a JSON Schema dict (draft 2020-12).

    The whole schema applies: nested properties, items, combinators and
    $ref included. The root must describe an object, since tool input is
    always a mapping of named arguments.
    """

    validator_class = jsonschema.Draft202012Validator

    def __init__(self, schema: Dict[str, Any]):
        root_type = schema.get("type", "object")
        if isinstance(root_type, str) and root_type != "object":
            raise ValueError(f"Tool schema must be an object schema, got {root_type!r}")
        try:
            self.validator_class.check_schema(schema)
        except jsonschema.SchemaError as e:
            raise ValueError(f"Invalid JSON Schema: {e.message}") from e

        self.schema = schema
        self._validator = self.validator_class(schema)

    def validate(self, raw: Any) -> ValidationOutcome:
        """Check `raw` against the schema. The value passes through unchanged."""
        if raw is None:
            raw = {}

        errors = sorted(
            self._validator.iter_errors(raw),
            key=lambda e: [str(part) for part in e.absolute_path],
        )
        if errors:
            return ValidationOutcome.failure(*(
                ValidationIssue(".".join(str(part) for part in e.absolute_path), e.message)
                for e in errors
            ))
        return ValidationOutcome.success(raw)

    def describe(self) -> Dict[str, Any]:
        return self.schema

    def __repr__(self) -> str:
        return f"JsonSchemaValidator({self.schema!r})"


def as_validator(schema: Any) -> SchemaValidator:
    """Coerce the schema forms a Tool accepts into a SchemaValidator."""
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return PydanticSchema(schema)
    if isinstance(schema, dict):
        return JsonSchemaValidator(schema)
    return schema
