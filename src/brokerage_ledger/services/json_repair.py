"""Extraction and bounded repair of JSON embedded in model output.

Collaborator responses are free text that usually contains a JSON object,
sometimes inside a ```json fence and sometimes cut off mid-document when
the output token limit is hit. Repair closes whatever strings, arrays and
objects are still open; if that does not parse, the text is cut back to the
last complete element and closed again, a bounded number of times.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from brokerage_ledger.exceptions import MalformedResponseError
from brokerage_ledger.logging_config import get_logger

logger = get_logger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)(?:```|\Z)", re.DOTALL | re.IGNORECASE)
MAX_REPAIR_ATTEMPTS = 8


@dataclass
class _ScanState:
    closers: list[str] = field(default_factory=list)
    in_string: bool = False
    comma_positions: list[int] = field(default_factory=list)


def _scan(text: str) -> _ScanState:
    state = _ScanState()
    escaped = False
    for index, char in enumerate(text):
        if state.in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                state.in_string = False
            continue
        if char == '"':
            state.in_string = True
        elif char == "{":
            state.closers.append("}")
        elif char == "[":
            state.closers.append("]")
        elif char in "}]":
            if state.closers:
                state.closers.pop()
        elif char == "," and state.closers:
            state.comma_positions.append(index)
    return state


def extract_json_text(text: str) -> str | None:
    """Pull the JSON document out of a response.

    Prefers a fenced ```json block; otherwise takes everything from the
    first opening brace to the last closing brace, or to the end of the
    text when the document was truncated.
    """
    match = _FENCE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()

    start = text.find("{")
    if start == -1:
        start = text.find("[")
    if start == -1:
        return None

    end = text.rfind("}")
    if end > start:
        candidate = text[start : end + 1]
        try:
            json.loads(candidate)
        except json.JSONDecodeError:
            return text[start:].strip()
        return candidate
    return text[start:].strip()


def close_open_structures(text: str) -> str:
    """Close an unterminated string and every unclosed bracket and brace."""
    state = _scan(text)
    repaired = text + ('"' if state.in_string else "")
    repaired = repaired.rstrip()
    while repaired.endswith((",", ":")):
        repaired = repaired[:-1].rstrip()
    return repaired + "".join(reversed(state.closers))


def load_json_lenient(text: str, max_attempts: int = MAX_REPAIR_ATTEMPTS) -> Any:
    """Parse JSON, repairing truncation if needed.

    Raises:
        MalformedResponseError: nothing parseable could be recovered.
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    candidate = text
    for attempt in range(1, max_attempts + 1):
        repaired = close_open_structures(candidate)
        try:
            value = json.loads(repaired)
        except json.JSONDecodeError:
            commas = _scan(candidate).comma_positions
            if not commas:
                break
            candidate = candidate[: commas[-1]]
            continue
        logger.info("json_repaired", attempts=attempt, original_length=len(text))
        return value

    raise MalformedResponseError(
        "Response JSON could not be parsed or repaired",
        context={"excerpt": text[:200]},
    )


def parse_response_json(text: str) -> Any:
    """Extract and parse the JSON document in a collaborator response."""
    extracted = extract_json_text(text)
    if extracted is None:
        raise MalformedResponseError(
            "Response does not contain a JSON document",
            context={"excerpt": text[:200]},
        )
    return load_json_lenient(extracted)
