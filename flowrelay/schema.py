"""Schema capability used wherever a workflow declares a shape.

A schema is anything with a ``validate(value)`` method that returns the typed
value or raises :class:`~flowrelay.errors.ValidationError`. Plain Python types,
pydantic models, ``TypedDict`` classes and typing constructs are wrapped in a
:class:`PydanticSchema` backed by a pydantic ``TypeAdapter``.
"""

from __future__ import annotations

import logging
import types
import typing
from typing import Any, Optional, Protocol, Union, get_args, get_origin, runtime_checkable

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.errors import PydanticSchemaGenerationError, PydanticUserError

from .errors import ValidationError, Violation

logger = logging.getLogger(__name__)


@runtime_checkable
class Schema(Protocol):
    """Capability interface: validate ``value`` or raise ``ValidationError``."""

    def validate(self, value: Any) -> Any:
        ...


class AnySchema:
    """Accepts every value unchanged."""

    python_type = Any
    name = "Any"

    def validate(self, value: Any) -> Any:
        return value

    def __repr__(self) -> str:
        return "AnySchema()"


class PydanticSchema:
    """Schema backed by a pydantic ``TypeAdapter``."""

    def __init__(self, python_type: Any, name: Optional[str] = None) -> None:
        self.python_type = python_type
        self.name = name or getattr(python_type, "__name__", None) or repr(python_type)
        self._adapter = TypeAdapter(python_type)

    def validate(self, value: Any) -> Any:
        try:
            return self._adapter.validate_python(value)
        except PydanticValidationError as exc:
            violations = [
                Violation(path=list(err["loc"]), message=err["msg"], type=err["type"])
                for err in exc.errors()
            ]
            raise ValidationError(
                f"Value does not match {self.name}", violations, value
            ) from exc

    def json_schema(self) -> dict[str, Any]:
        return self._adapter.json_schema()

    def __repr__(self) -> str:
        return f"PydanticSchema({self.name})"


def as_schema(shape: Any) -> Optional[Schema]:
    """Coerce a declared shape into a :class:`Schema` (``None`` stays ``None``)."""

    if shape is None:
        return None
    if isinstance(shape, (PydanticSchema, AnySchema)):
        return shape
    if not isinstance(shape, type) and callable(getattr(shape, "validate", None)):
        return shape
    return PydanticSchema(shape)


def validate_with(schema: Optional[Schema], value: Any) -> Any:
    """Validate ``value`` with ``schema`` when one is declared."""

    if schema is None:
        return value
    return schema.validate(value)


# ----------------------------------------------------------------------
# Build-time compatibility


def _is_model(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, BaseModel)


def _is_union(origin: Any) -> bool:
    return origin is Union or origin is types.UnionType


def _typed_dict_fields(tp: Any) -> tuple[dict[str, Any], frozenset[str]]:
    hints = typing.get_type_hints(tp)
    required = getattr(tp, "__required_keys__", frozenset(hints))
    return hints, frozenset(required)


def _models_compatible(produced: type[BaseModel], expected: type[BaseModel]) -> bool:
    for name, field in expected.model_fields.items():
        source = produced.model_fields.get(name)
        if source is None:
            if field.is_required():
                return False
            continue
        if not types_compatible(source.annotation, field.annotation):
            return False
    return True


def _typed_dicts_compatible(produced: Any, expected: Any) -> bool:
    produced_fields, _ = _typed_dict_fields(produced)
    expected_fields, required = _typed_dict_fields(expected)
    for name, annotation in expected_fields.items():
        if name not in produced_fields:
            if name in required:
                return False
            continue
        if not types_compatible(produced_fields[name], annotation):
            return False
    return True


def types_compatible(produced: Any, expected: Any) -> bool:
    """Return ``False`` only when ``produced`` provably cannot satisfy ``expected``."""

    if expected is Any or expected is object or produced is Any:
        return True
    if produced == expected:
        return True

    if _is_model(produced) and _is_model(expected):
        return _models_compatible(produced, expected)
    if typing.is_typeddict(produced) and typing.is_typeddict(expected):
        return _typed_dicts_compatible(produced, expected)
    if isinstance(produced, type) and isinstance(expected, type):
        if issubclass(produced, expected):
            return True
        if expected is float and produced is int:
            return True

    expected_origin = get_origin(expected)
    produced_origin = get_origin(produced)
    if _is_union(expected_origin):
        return any(types_compatible(produced, arg) for arg in get_args(expected))
    if _is_union(produced_origin):
        return all(types_compatible(arg, expected) for arg in get_args(produced))
    if expected_origin is not None and produced is expected_origin:
        return True
    if produced_origin is not None and expected is produced_origin:
        return True
    if expected_origin is not None and produced_origin == expected_origin:
        produced_args, expected_args = get_args(produced), get_args(expected)
        if len(produced_args) == len(expected_args):
            return all(
                types_compatible(p, e) for p, e in zip(produced_args, expected_args)
            )

    try:
        return (
            TypeAdapter(produced).json_schema() == TypeAdapter(expected).json_schema()
        )
    except (PydanticSchemaGenerationError, PydanticUserError, TypeError):
        logger.debug(f"Cannot compare shapes {produced!r} and {expected!r}")
        return True


def is_compatible(produced: Optional[Schema], expected: Optional[Schema]) -> bool:
    """Check two declared schemas; undeclared or opaque shapes are accepted."""

    if produced is None or expected is None:
        return True
    produced_type = getattr(produced, "python_type", None)
    expected_type = getattr(expected, "python_type", None)
    if produced_type is None or expected_type is None:
        return True
    return types_compatible(produced_type, expected_type)
