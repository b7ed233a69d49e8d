"""Schema translation between pydantic models and plain JSON-Schema.

Handler authors may describe a tool's input as a pydantic model; the host
flattens it into the JSON-Schema shape carried in ``TOOLS``.  The bridge goes
the other way and rebuilds a pydantic model from that JSON-Schema so the MCP
layer has something to validate arguments against.  Only the shape needs to
survive the second direction, not every constraint.

Annotations are first classified into a :class:`SchemaNode` (a closed set of
:class:`SchemaKind` variants); conversion then switches on ``node.kind``.
"""

from __future__ import annotations

import collections.abc
import keyword
import logging
import types
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic.fields import FieldInfo
from pydantic.functional_validators import (
    AfterValidator,
    BeforeValidator,
    PlainValidator,
    WrapValidator,
)
from pydantic_core import PydanticSerializationError, to_jsonable_python

logger = logging.getLogger(__name__)

_MISSING: Any = object()

_EFFECT_TYPES = (AfterValidator, BeforeValidator, PlainValidator, WrapValidator)

_ARRAY_ORIGINS = (
    list,
    tuple,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
    collections.abc.MutableSet,
)

_UNION_ORIGINS = (Union, types.UnionType)


class SchemaKind(str, Enum):
    """Recognised node kinds of a pydantic-described schema."""

    OBJECT = "object"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    ENUM = "enum"
    OPTIONAL = "optional"
    DEFAULT = "default"
    EFFECTS = "effects"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SchemaNode:
    """One classified schema node.

    ``inner`` is the wrapped annotation for ``optional``/``default``/``effects``
    and the item annotation for ``array``.
    """

    kind: SchemaKind
    annotation: Any
    inner: Any = None
    metadata: tuple[Any, ...] = ()
    description: str | None = None
    default: Any = _MISSING
    values: tuple[Any, ...] = ()


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def is_validation_schema(value: Any) -> bool:
    """Return ``True`` if *value* is a pydantic model class."""
    return get_origin(value) is None and isinstance(value, type) and issubclass(value, BaseModel)


def _is_optional(annotation: Any) -> bool:
    return get_origin(annotation) in _UNION_ORIGINS and type(None) in get_args(annotation)


def classify(
    annotation: Any,
    *,
    metadata: tuple[Any, ...] | list[Any] = (),
    description: str | None = None,
    default: Any = _MISSING,
) -> SchemaNode:
    """Classify *annotation* (plus field-level extras) into a :class:`SchemaNode`."""
    metadata = tuple(metadata)

    # ``x: str | None = None`` -- the None default only marks the field optional.
    if default is not _MISSING and not (default is None and _is_optional(annotation)):
        return SchemaNode(
            SchemaKind.DEFAULT,
            annotation,
            inner=annotation,
            metadata=metadata,
            description=description,
            default=default,
        )

    origin = get_origin(annotation)

    if origin is Annotated:
        inner, *extra = get_args(annotation)
        for item in extra:
            if isinstance(item, FieldInfo):
                description = description or item.description
                metadata += tuple(item.metadata)
            else:
                metadata += (item,)
        return classify(inner, metadata=metadata, description=description)

    if any(isinstance(item, _EFFECT_TYPES) for item in metadata):
        rest = tuple(item for item in metadata if not isinstance(item, _EFFECT_TYPES))
        return SchemaNode(
            SchemaKind.EFFECTS, annotation, inner=annotation, metadata=rest, description=description
        )

    if _is_optional(annotation):
        args = [arg for arg in get_args(annotation) if arg is not type(None)]
        inner = args[0] if len(args) == 1 else Union[tuple(args)]  # noqa: UP007
        return SchemaNode(
            SchemaKind.OPTIONAL, annotation, inner=inner, metadata=metadata, description=description
        )

    if origin is Literal:
        values = get_args(annotation)
        if values and all(isinstance(v, str) for v in values):
            return SchemaNode(
                SchemaKind.ENUM, annotation, metadata=metadata, description=description, values=values
            )
        return SchemaNode(SchemaKind.UNKNOWN, annotation)

    if origin in _ARRAY_ORIGINS:
        args = get_args(annotation)
        return SchemaNode(
            SchemaKind.ARRAY,
            annotation,
            inner=args[0] if args else Any,
            metadata=metadata,
            description=description,
        )

    if origin is None and isinstance(annotation, type):
        if issubclass(annotation, BaseModel):
            return SchemaNode(SchemaKind.OBJECT, annotation, description=description)
        if issubclass(annotation, bool):
            return SchemaNode(SchemaKind.BOOLEAN, annotation, description=description)
        if issubclass(annotation, Enum):
            values = tuple(member.value for member in annotation)
            if values and all(isinstance(v, str) for v in values):
                return SchemaNode(
                    SchemaKind.ENUM, annotation, description=description, values=values
                )
            return SchemaNode(SchemaKind.UNKNOWN, annotation)
        if issubclass(annotation, str):
            return SchemaNode(
                SchemaKind.STRING, annotation, metadata=metadata, description=description
            )
        if issubclass(annotation, (int, float, Decimal)):
            return SchemaNode(SchemaKind.NUMBER, annotation, description=description)
        if annotation in _ARRAY_ORIGINS:
            return SchemaNode(
                SchemaKind.ARRAY, annotation, inner=Any, metadata=metadata, description=description
            )

    return SchemaNode(SchemaKind.UNKNOWN, annotation)


# ---------------------------------------------------------------------------
# pydantic -> JSON-Schema
# ---------------------------------------------------------------------------


def to_json_schema(value: Any) -> Any:
    """Convert a pydantic model class to JSON-Schema.

    Anything that is not a model class is assumed to be JSON-Schema already
    and returned unchanged.
    """
    if not is_validation_schema(value):
        return value
    return _convert(classify(value), ())


def _with_description(result: dict[str, Any], node: SchemaNode) -> dict[str, Any]:
    if node.description:
        result["description"] = node.description
    return result


def _convert(node: SchemaNode, stack: tuple[type, ...]) -> dict[str, Any]:
    kind = node.kind

    if kind is SchemaKind.OBJECT:
        return _with_description(_object_schema(node.annotation, stack), node)

    if kind is SchemaKind.DEFAULT:
        result = _convert(
            classify(node.inner, metadata=node.metadata, description=node.description), stack
        )
        try:
            result["default"] = to_jsonable_python(node.default)
        except PydanticSerializationError:
            logger.warning("Default value %r is not JSON-serializable, dropping it", node.default)
        return result

    if kind in (SchemaKind.OPTIONAL, SchemaKind.EFFECTS):
        return _convert(
            classify(node.inner, metadata=node.metadata, description=node.description), stack
        )

    if kind is SchemaKind.STRING:
        result = {"type": "string"}
        for item in node.metadata:
            min_length = getattr(item, "min_length", None)
            max_length = getattr(item, "max_length", None)
            if min_length is not None:
                result["minLength"] = min_length
            if max_length is not None:
                result["maxLength"] = max_length
        return _with_description(result, node)

    if kind is SchemaKind.NUMBER:
        return _with_description({"type": "number"}, node)

    if kind is SchemaKind.BOOLEAN:
        return _with_description({"type": "boolean"}, node)

    if kind is SchemaKind.ARRAY:
        items = _convert(classify(node.inner), stack)
        return _with_description({"type": "array", "items": items}, node)

    if kind is SchemaKind.ENUM:
        return _with_description({"type": "string", "enum": list(node.values)}, node)

    logger.warning("Unsupported schema type %r, falling back to string", node.annotation)
    return {"type": "string"}


def _field_default(field: FieldInfo) -> Any:
    if field.default_factory is not None:
        try:
            return field.get_default(call_default_factory=True)
        except TypeError:
            # factories taking validated data cannot be evaluated here
            return _MISSING
    return field.default


def _object_schema(model: type[BaseModel], stack: tuple[type, ...]) -> dict[str, Any]:
    if model in stack:
        logger.warning("Recursive model %s, emitting an unconstrained object", model.__name__)
        return {"type": "object"}

    properties: dict[str, Any] = {}
    required: list[str] = []
    for name, field in model.model_fields.items():
        key = field.alias or name
        is_required = field.is_required()
        node = classify(
            field.annotation,
            metadata=field.metadata,
            description=field.description,
            default=_MISSING if is_required else _field_default(field),
        )
        properties[key] = _convert(node, (*stack, model))
        if is_required:
            required.append(key)

    return {
        "type": "object",
        "properties": properties,
        "required": required,
        "additionalProperties": False,
    }


# ---------------------------------------------------------------------------
# JSON-Schema -> pydantic
# ---------------------------------------------------------------------------


def _field_name(key: str, index: int, used: set[str]) -> str:
    name = key
    if (
        not key.isidentifier()
        or keyword.iskeyword(key)
        or key.startswith("_")
        or hasattr(BaseModel, key)
    ):
        name = f"field_{index}"
    while name in used:
        name += "_"
    used.add(name)
    return name


def to_validator(schema: Any, name: str = "Input") -> Any:
    """Rebuild a pydantic annotation from a JSON-Schema node.

    Objects become ``create_model`` classes whose fields carry the original
    property names as aliases; unsupported nodes become ``Any``.
    """
    if not isinstance(schema, collections.abc.Mapping):
        return Any

    kind = schema.get("type")
    if kind == "object":
        properties = schema.get("properties")
        if not isinstance(properties, collections.abc.Mapping):
            return dict[str, Any]
        required = schema.get("required")
        required = set(required) if isinstance(required, list) else set()

        used: set[str] = set()
        fields: dict[str, Any] = {}
        for index, (key, prop) in enumerate(properties.items()):
            annotation = to_validator(prop, f"{name}_{index}")
            description = prop.get("description") if isinstance(prop, collections.abc.Mapping) else None
            field_name = _field_name(str(key), index, used)
            if key in required:
                fields[field_name] = (annotation, Field(..., alias=key, description=description))
            else:
                fields[field_name] = (
                    Optional[annotation],  # noqa: UP045
                    Field(None, alias=key, description=description),
                )
        return create_model(name, __config__=ConfigDict(populate_by_name=True), **fields)

    if kind == "string":
        return str
    if kind == "number":
        return Union[int, float]  # noqa: UP007
    if kind == "integer":
        return int
    if kind == "boolean":
        return bool
    if kind == "array":
        return list[to_validator(schema.get("items"), f"{name}_item")]  # type: ignore[misc]
    return Any


def input_model(schema: Any, name: str = "Input") -> type[BaseModel]:
    """Return a model class for a tool's ``inputSchema``.

    Non-object schemas yield an empty model, so the tool takes no arguments.
    """
    validator = to_validator(schema, name)
    if is_validation_schema(validator):
        return validator  # type: ignore[no-any-return]
    return create_model(name)
