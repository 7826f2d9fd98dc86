"""
Request validation for the master server.

Validators are small fluent chains of rules; the first failing rule raises
InvalidInputError carrying the field name and the rule's message.
"""

import re
from typing import Any, Dict, List, Optional, Union, Callable, Type
from dataclasses import dataclass

from .errors import InvalidInputError

MAX_NAME_LENGTH = 256

_PORT_DIGITS = re.compile(r"[0-9]+")


@dataclass
class ValidationRule:
    """One check applied to a request field."""
    code: str
    check: Callable[[Any], bool]
    message: str


class Validator:
    """Ordered rules for a single field. Absent values only fail `required`."""

    def __init__(self, field_name: str):
        self.field_name = field_name
        self.rules: List[ValidationRule] = []

    def _add(self, code: str, check: Callable[[Any], bool], message: str) -> 'Validator':
        self.rules.append(ValidationRule(code=code, check=check, message=message))
        return self

    def required(self, message: Optional[str] = None) -> 'Validator':
        return self._add(
            "REQUIRED",
            lambda value: value is not None,
            message or f"Missing `{self.field_name}` in request body"
        )

    def of_type(self, expected: Union[Type, tuple], message: Optional[str] = None) -> 'Validator':
        names = expected if isinstance(expected, tuple) else (expected,)
        return self._add(
            "TYPE",
            lambda value: value is None or isinstance(value, expected),
            message or f"{self.field_name} must be of type {' or '.join(t.__name__ for t in names)}"
        )

    def not_blank(self, message: Optional[str] = None) -> 'Validator':
        """Strings must hold something besides whitespace."""
        return self._add(
            "NOT_BLANK",
            lambda value: not isinstance(value, str) or bool(value.strip()),
            message or f"{self.field_name} cannot be empty"
        )

    def max_length(self, length: int, message: Optional[str] = None) -> 'Validator':
        return self._add(
            "MAX_LENGTH",
            lambda value: value is None or len(str(value)) <= length,
            message or f"{self.field_name} must be at most {length} characters"
        )

    def between(self, low: int, high: int, message: Optional[str] = None) -> 'Validator':
        """Inclusive numeric bounds."""
        def in_bounds(value: Any) -> bool:
            if value is None:
                return True
            try:
                return low <= value <= high
            except TypeError:
                return False

        return self._add(
            "RANGE",
            in_bounds,
            message or f"{self.field_name} must be between {low} and {high}"
        )

    def custom(self, check: Callable[[Any], bool], message: str, code: str = "CUSTOM") -> 'Validator':
        return self._add(code, check, message)

    def validate(self, value: Any) -> Any:
        """Raise InvalidInputError on the first failing rule; return the value otherwise."""
        for rule in self.rules:
            if not rule.check(value):
                raise InvalidInputError(
                    field=self.field_name,
                    value=value,
                    constraint=rule.message,
                    message=rule.message,
                )
        return value


class SchemaValidator:
    """Field validators for a JSON object body."""

    def __init__(self):
        self.validators: Dict[str, Validator] = {}

    def field(self, name: str) -> Validator:
        self.validators[name] = Validator(name)
        return self.validators[name]

    def validate(self, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise InvalidInputError(
                field="body",
                value=data,
                constraint="request body must be a JSON object",
                message="Request body must be a JSON object",
            )

        for name, validator in self.validators.items():
            validator.validate(data.get(name))
        return data


def coerce_port(value: Any, field_name: str = "port") -> int:
    """
    Convert a caller supplied port into an int in 1..65535.

    ASCII digit strings are accepted (ports arrive as path segments); booleans,
    fractional numbers and other Unicode digits are not.
    """
    if isinstance(value, bool):
        port = None
    elif isinstance(value, int):
        port = value
    elif isinstance(value, float) and value.is_integer():
        port = int(value)
    elif isinstance(value, str) and _PORT_DIGITS.fullmatch(value.strip()):
        port = int(value.strip())
    else:
        port = None

    if port is None:
        raise InvalidInputError(
            field=field_name,
            value=value,
            constraint=f"{field_name} must be an integer",
            message=f"`{field_name}` must be an integer",
        )

    return port_validator(field_name).validate(port)


def port_validator(field_name: str = "port") -> Validator:
    return (Validator(field_name)
            .of_type(int)
            .between(1, 65535))


def server_name_validator(field_name: str = "name") -> Validator:
    """Display names: present, a string, not blank, bounded."""
    return (Validator(field_name)
            .required(f"{field_name} cannot be null")
            .of_type(str)
            .not_blank()
            .max_length(MAX_NAME_LENGTH))


def register_schema() -> SchemaValidator:
    """Body of POST /server."""
    schema = SchemaValidator()
    schema.field("name").required().of_type(str).not_blank().max_length(MAX_NAME_LENGTH)
    schema.field("port").required()
    return schema


__all__ = [
    'ValidationRule',
    'Validator',
    'SchemaValidator',
    'coerce_port',
    'port_validator',
    'server_name_validator',
    'register_schema',
    'MAX_NAME_LENGTH',
]
