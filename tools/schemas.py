"""Parameter validation (JSON Schema) and model-facing tool definitions."""

import logging
from typing import Any, Dict, List

import jsonschema
from jsonschema import Draft7Validator

from agent.errors import ValidationError
from tools.base import Tool

logger = logging.getLogger(__name__)


def check_schema(schema: Dict[str, Any]) -> None:
    """Raise ValidationError if a tool's parameter schema is itself invalid."""
    try:
        Draft7Validator.check_schema(schema)
    except jsonschema.SchemaError as e:
        raise ValidationError(f"Invalid parameter schema: {e.message}", code="INVALID_SCHEMA")


def validate_params(tool: Tool, params: Any) -> Dict[str, Any]:
    """Validate raw parameters against the tool's schema.

    All violations are reported together in a single ValidationError.
    Returns a shallow copy of the validated parameters.
    """
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ValidationError(
            f"Parameters for {tool.name} must be an object, got {type(params).__name__}",
            context={"tool": tool.name},
        )
    validator = Draft7Validator(tool.param_schema)
    errors = sorted(validator.iter_errors(params), key=lambda e: list(e.absolute_path))
    if errors:
        problems: List[str] = []
        for err in errors:
            where = "/".join(str(p) for p in err.absolute_path) or "<root>"
            problems.append(f"{where}: {err.message}")
        logger.debug(f"Parameter validation failed for {tool.name}: {problems}")
        raise ValidationError(
            f"Schema validation failed for {tool.name}: " + "; ".join(problems),
            context={"tool": tool.name, "errors": problems},
        )
    return dict(params)


def tool_definition(tool: Tool) -> Dict[str, Any]:
    """Bedrock/Anthropic Messages API tool definition."""
    return {
        "name": tool.name,
        "description": tool.description or tool.name,
        "input_schema": tool.param_schema,
    }
