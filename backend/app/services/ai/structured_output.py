"""
Structured output support.

A system prompt in the "Structured Output" category carries a declarative
field-tree. From it we build:
- a pydantic model used to check what the model produced (``build_schema``)
- an inline JSON schema handed to providers with constrained decoding
  (``to_json_schema``)
- the strict-compliance system instruction (``build_structured_instructions``)

Checks are informational: discrepancies are logged, the answer is returned.
"""

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

import pydantic
import structlog
from pydantic import ConfigDict, create_model

from app.core.models import FieldType, JsonField, PromptCategory

logger = structlog.get_logger()

STRUCTURED_TEMPERATURE = 0.1

_SCALARS: dict[str, type] = {
    FieldType.STRING.value: str,
    FieldType.NUMBER.value: float,
    FieldType.BOOLEAN.value: bool,
}

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass
class StructuredOutputReport:
    missing_required_fields: list[str] = field(default_factory=list)
    unexpected_fields: list[str] = field(default_factory=list)
    type_errors: list[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not (self.missing_required_fields or self.unexpected_fields or self.type_errors)


def is_structured(prompt: Any) -> bool:
    """True for prompts that should trigger constrained generation."""
    return bool(
        prompt is not None
        and prompt.category == PromptCategory.STRUCTURED_OUTPUT.value
        and prompt.json_schema
    )


def parse_fields(raw: Sequence[JsonField | dict[str, Any]] | None) -> list[JsonField]:
    return [f if isinstance(f, JsonField) else JsonField.model_validate(f) for f in raw or []]


# =============================================================================
# Validator
# =============================================================================


def _field_type(node: JsonField, model_name: str) -> Any:
    if node.type in _SCALARS:
        return _SCALARS[node.type]

    if node.type == FieldType.OBJECT.value:
        if node.children:
            return build_schema(node.children, f"{model_name}_{node.name}")
        return dict[str, Any]

    if node.type == FieldType.ARRAY.value:
        item = node.array_item_type
        if item in _SCALARS:
            return list[_SCALARS[item]]
        if item == FieldType.OBJECT.value:
            if node.children:
                return list[build_schema(node.children, f"{model_name}_{node.name}")]
            return list[dict[str, Any]]
        return list[str]

    logger.warning("structured_output_unknown_field_type", field=node.name, type=node.type)
    return str


def build_schema(
    fields: Sequence[JsonField | dict[str, Any]],
    model_name: str = "StructuredOutput",
) -> type[pydantic.BaseModel]:
    """Build a pydantic model from a field-tree.

    Optional fields accept absence and null. Undeclared keys are allowed so
    the model only reports type problems; extra keys are reported by
    ``validate_structured_output``.
    """
    # Field names are user data: attributes are positional, the declared
    # name is the alias
    definitions: dict[str, Any] = {}
    for index, node in enumerate(parse_fields(fields)):
        annotation = _field_type(node, model_name)
        if node.required:
            definitions[f"field_{index}"] = (
                annotation,
                pydantic.Field(alias=node.name, description=node.description),
            )
        else:
            definitions[f"field_{index}"] = (
                Optional[annotation],
                pydantic.Field(default=None, alias=node.name, description=node.description),
            )

    return create_model(model_name, __config__=ConfigDict(extra="allow"), **definitions)


def validate_structured_output(
    obj: Any,
    fields: Sequence[JsonField | dict[str, Any]],
    validator: type[pydantic.BaseModel] | None = None,
) -> StructuredOutputReport:
    """Compare a generated object with the field-tree's top level."""
    nodes = parse_fields(fields)
    declared = {node.name for node in nodes}
    keys = list(obj) if isinstance(obj, dict) else []

    report = StructuredOutputReport(
        missing_required_fields=[s.name for s in nodes if s.required and s.name not in keys],
        unexpected_fields=[k for k in keys if k not in declared],
    )

    if validator is not None:
        try:
            validator.model_validate(obj)
        except pydantic.ValidationError as e:
            report.type_errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
                if err["type"] != "missing"
            ]
    return report


def log_report(report: StructuredOutputReport, **context: Any) -> None:
    if report.missing_required_fields:
        logger.warning(
            "structured_output_missing_fields",
            fields=report.missing_required_fields,
            **context,
        )
    if report.unexpected_fields:
        logger.warning(
            "structured_output_unexpected_fields",
            fields=report.unexpected_fields,
            **context,
        )
    if report.type_errors:
        logger.warning("structured_output_type_errors", errors=report.type_errors, **context)


# =============================================================================
# Provider-facing schema and instructions
# =============================================================================


def _json_schema_for(node: JsonField) -> dict[str, Any]:
    schema: dict[str, Any]
    if node.type in _SCALARS:
        schema = {"type": node.type}
    elif node.type == FieldType.OBJECT.value:
        schema = to_json_schema(node.children) if node.children else {"type": "object"}
    elif node.type == FieldType.ARRAY.value:
        item = node.array_item_type
        if item in _SCALARS:
            items: dict[str, Any] = {"type": item}
        elif item == FieldType.OBJECT.value:
            items = to_json_schema(node.children) if node.children else {"type": "object"}
        else:
            items = {"type": "string"}
        schema = {"type": "array", "items": items}
    else:
        schema = {"type": "string"}

    if node.description:
        schema["description"] = node.description
    return schema


def to_json_schema(fields: Sequence[JsonField | dict[str, Any]] | None) -> dict[str, Any]:
    """Inline (no $ref) JSON schema for a field-tree."""
    nodes = parse_fields(fields)
    return {
        "type": "object",
        "properties": {node.name: _json_schema_for(node) for node in nodes},
        "required": [node.name for node in nodes if node.required],
    }


def build_structured_instructions(content: str, fields: Sequence[JsonField | dict[str, Any]]) -> str:
    """System instruction demanding strict schema compliance."""
    listing = ", ".join(
        f"{node.name} ({node.type}){' *required*' if node.required else ''}"
        for node in parse_fields(fields)
    )
    return (
        f"{content}\n\n"
        "CRITICAL: You MUST respond with valid JSON that matches the exact schema above.\n"
        "- Include ONLY the fields defined in the schema\n"
        "- Use the exact field names specified\n"
        "- Match the exact data types specified\n"
        "- Do NOT add any additional fields, explanations, or context\n"
        "- Do NOT provide analysis beyond what's requested\n"
        "- Your response must be parseable as JSON with only the specified structure\n\n"
        f"Schema fields: {listing}"
    )


# =============================================================================
# Parsing and formatting
# =============================================================================


def parse_json_text(text: str) -> Any:
    """Parse model output as JSON, tolerating a surrounding Markdown fence.

    Raises:
        json.JSONDecodeError: the text is not JSON
    """
    stripped = text.strip()
    match = _FENCE.match(stripped)
    if match:
        stripped = match.group(1)
    return json.loads(stripped)


def format_output(obj: Any) -> str:
    """Compact JSON for small flat objects, 2-space indented JSON otherwise."""
    is_simple = (
        isinstance(obj, dict)
        and len(obj) <= 3
        and all(not isinstance(v, (dict, list)) for v in obj.values())
    )
    if is_simple:
        return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(obj, ensure_ascii=False, indent=2)
