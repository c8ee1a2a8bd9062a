from __future__ import annotations

import json
import logging
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from relayrag.core.errors import MalformedVendorOutputError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


def strip_fences(raw_output: str) -> str:
    # Models often wrap JSON in Markdown fences; take the first fenced block.
    cleaned = raw_output.strip()
    match = _FENCE_RE.search(cleaned)
    if match:
        return match.group(1).strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_vendor_json(raw_output: str) -> Any:
    try:
        return json.loads(strip_fences(raw_output))
    except (json.JSONDecodeError, TypeError) as exc:
        # Raw text stays in logs for diagnosis and never reaches the client.
        logger.warning("vendor_output_malformed raw=%r", raw_output[:2000])
        raise MalformedVendorOutputError("vendor output is not valid JSON", raw_output) from exc


def parse_vendor_model(raw_output: str, model: type[T]) -> T:
    parsed = parse_vendor_json(raw_output)
    try:
        return model.model_validate(parsed)
    except ValidationError as exc:
        logger.warning("vendor_output_invalid schema=%s raw=%r", model.__name__, raw_output[:2000])
        raise MalformedVendorOutputError(f"vendor output does not match {model.__name__}", raw_output) from exc
