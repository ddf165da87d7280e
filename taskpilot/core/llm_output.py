import json
import re
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)

# Greedy on purpose: the outermost {...} span, so nested objects stay intact.
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_CODE_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


class LLMInvalidJSON(ValueError):
    """Raised when model output does not contain a usable JSON object."""


class LLMSchemaViolation(ValueError):
    """Raised when JSON is valid but does not match schema."""


def extract_json_object(raw_output: str) -> Dict[str, Any]:
    """
    Locate and parse the JSON object embedded in free model text.

    Reason:
    - Models wrap JSON in prose or markdown fences more often than not.
    Benefit:
    - Callers get a dict or one well-known exception type, nothing else.
    """
    if not isinstance(raw_output, str) or not raw_output.strip():
        raise LLMInvalidJSON("LLM returned empty output")

    candidates = [m.group(1) for m in _CODE_FENCE.finditer(raw_output)]
    candidates.append(raw_output)

    last_error: Exception | None = None
    for text in candidates:
        match = _JSON_OBJECT.search(text)
        if not match:
            continue
        try:
            data = json.loads(match.group(0))
        except (ValueError, RecursionError) as e:
            last_error = e
            continue
        if isinstance(data, dict):
            return data

    raise LLMInvalidJSON("LLM output has no JSON object") from last_error


def parse_and_validate(raw_output: str, schema: Type[T]) -> T:
    """
    Extract the embedded JSON object and validate it against a Pydantic schema.
    """
    data = extract_json_object(raw_output)
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        raise LLMSchemaViolation("LLM JSON did not match schema") from e
