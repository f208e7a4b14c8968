"""Argument decoding for tool handlers and structured-output parsing.

Both directions go through pydantic: a tool's declared parameters are either a
``BaseModel`` subclass or a JSON schema dict that is turned into one, and a
session's response schema is either a model or a schema dict.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError, create_model

from genloop.agent.messages import ToolDescriptor
from genloop.errors import StructuredOutputParseError, ToolDecodeError

_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


@dataclass(slots=True)
class DecodedArguments:
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] | None = None


def _is_model(value: Any) -> bool:
    return isinstance(value, type) and issubclass(value, BaseModel)


def _schema_type(schema: Mapping[str, Any]) -> Any:
    return _JSON_TYPES.get(str(schema.get("type", "string")), Any)


def model_from_schema(name: str, schema: Mapping[str, Any]) -> type[BaseModel]:
    properties = schema.get("properties") or {}
    if not isinstance(properties, Mapping):
        raise TypeError("'properties' must be an object")
    required = set(schema.get("required") or [])

    field_definitions: dict[str, Any] = {}
    for prop_name, prop_schema in properties.items():
        if not isinstance(prop_schema, Mapping):
            raise TypeError(f"property '{prop_name}' must be an object schema")
        prop_type = _schema_type(prop_schema)
        description = prop_schema.get("description", "")
        if prop_name in required:
            field_definitions[prop_name] = (prop_type, Field(description=description))
        else:
            field_definitions[prop_name] = (
                prop_type | None if prop_type is not Any else Any,
                Field(default=prop_schema.get("default"), description=description),
            )
    return create_model(f"{name}_arguments", **field_definitions)


def parameters_model(name: str, parameters: Any) -> type[BaseModel] | None:
    """Resolve a tool's declared parameters to a pydantic model, or None when it takes none."""
    if parameters is None:
        return None
    if _is_model(parameters):
        return parameters
    if isinstance(parameters, Mapping):
        return model_from_schema(name, parameters)
    raise TypeError(f"unsupported parameter shape: {parameters!r}")


def parameters_schema(parameters: Any) -> dict:
    if parameters is None:
        return {"type": "object", "properties": {}}
    if _is_model(parameters):
        return parameters.model_json_schema()
    if isinstance(parameters, Mapping):
        return dict(parameters)
    raise TypeError(f"unsupported parameter shape: {parameters!r}")


class ParameterCodec:
    def __init__(self) -> None:
        # tool name -> (declared parameters, model built from them)
        self._models: dict[str, tuple[Any, type[BaseModel]]] = {}

    def _load(self, tool_name: str, arguments: str | Mapping[str, Any] | None) -> dict[str, Any]:
        if arguments is None:
            return {}
        if isinstance(arguments, Mapping):
            return dict(arguments)
        raw = arguments.strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ToolDecodeError(tool_name, f"arguments are not valid JSON ({exc.msg})") from exc
        if not isinstance(parsed, dict):
            raise ToolDecodeError(tool_name, "arguments must be a JSON object")
        return parsed

    def _model_for(self, descriptor: ToolDescriptor) -> type[BaseModel]:
        parameters = descriptor.parameters
        if _is_model(parameters):
            return parameters
        cached = self._models.get(descriptor.name)
        if cached is not None and cached[0] is parameters:
            return cached[1]
        try:
            model = parameters_model(descriptor.name, parameters)
        except Exception as exc:
            raise ToolDecodeError(descriptor.name, f"parameter schema is unusable ({exc})") from exc
        self._models[descriptor.name] = (parameters, model)
        return model

    def decode(self, descriptor: ToolDescriptor, arguments: str | Mapping[str, Any] | None) -> DecodedArguments:
        values = self._load(descriptor.name, arguments)
        if descriptor.parameters is None:
            return DecodedArguments()

        model = self._model_for(descriptor)
        try:
            instance = model.model_validate(values)
        except ValidationError as exc:
            raise ToolDecodeError(descriptor.name, _summarize(exc)) from exc

        if _is_model(descriptor.parameters):
            return DecodedArguments(args=(instance,))
        return DecodedArguments(kwargs=instance.model_dump(exclude_unset=True))


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts)


class SchemaProvider:
    """Wraps a response schema: a pydantic model class or a JSON schema dict."""

    def __init__(self, schema: Any, name: str | None = None) -> None:
        if _is_model(schema):
            self._model: type[BaseModel] | None = schema
            self._schema = schema.model_json_schema()
            self.name = name or schema.__name__
        elif isinstance(schema, Mapping):
            self._model = None
            self._schema = dict(schema)
            self.name = name or str(schema.get("title") or "response")
        else:
            raise TypeError(f"unsupported schema: {schema!r}")

    @classmethod
    def resolve(cls, schema: Any) -> "SchemaProvider | None":
        if schema is None:
            return None
        if isinstance(schema, SchemaProvider):
            return schema
        return cls(schema)

    @property
    def json_schema(self) -> dict:
        return dict(self._schema)

    def parse(self, text: str) -> Any:
        try:
            if self._model is not None:
                return self._model.model_validate_json(text)
            return json.loads(text)
        except (ValidationError, ValueError) as exc:
            raise StructuredOutputParseError(f"response does not match schema '{self.name}': {exc}") from exc
