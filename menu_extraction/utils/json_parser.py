"""Tolerant JSON parsing for model responses.

Model output is frequently wrapped in markdown fences, preceded by prose,
littered with trailing commas or cut off mid-array when the output token
limit is reached. Recovery is attempted in a fixed order:

1. strip fences and surrounding prose
2. remove trailing commas
3. trim to the last complete JSON value by bracket balance
4. regex extraction of individual objects, with synthetic positional ids
"""

import json
import re
from typing import Any, Dict, List, Optional, Union

from menu_extraction.utils.logging import get_logger

LOGGER = get_logger(__name__)

FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)
OPEN_FENCE_PATTERN = re.compile(r"^```(?:json|JSON)?\s*")
TRAILING_COMMA_PATTERN = re.compile(r",\s*([\]}])")
# Objects with at most one level of nested braces
OBJECT_PATTERN = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", re.DOTALL)

CLOSERS = {"{": "}", "[": "]"}


def strip_markdown_fences(text: str) -> str:
    """Remove markdown code fences and any prose around the JSON payload.

    Args:
        text: Raw model output

    Returns:
        Text starting at the first ``[`` or ``{`` and ending at the last
        ``]`` or ``}``; unchanged if no bracket is present
    """
    cleaned = text.strip()

    match = FENCE_PATTERN.search(cleaned)
    if match:
        cleaned = match.group(1).strip()
    elif cleaned.startswith("```"):
        # Opening fence without a closing one: truncated response
        cleaned = OPEN_FENCE_PATTERN.sub("", cleaned)

    starts = [pos for pos in (cleaned.find("["), cleaned.find("{")) if pos != -1]
    if starts:
        cleaned = cleaned[min(starts):]

    end = max(cleaned.rfind("]"), cleaned.rfind("}"))
    if end != -1:
        cleaned = cleaned[: end + 1]

    return cleaned.strip()


def remove_trailing_commas(text: str) -> str:
    """Remove commas that directly precede a closing bracket."""
    return TRAILING_COMMA_PATTERN.sub(r"\1", text)


def find_last_complete_value(text: str) -> Optional[str]:
    """Trim truncated JSON back to its last complete value.

    Scans the text tracking string literals and open containers. If the
    outermost container closes, everything up to that point is returned.
    Otherwise the text is cut right after the last closed container and the
    containers still open at that point are closed in reverse order.

    Args:
        text: JSON text, possibly truncated

    Returns:
        A string that should parse as JSON, or None if nothing complete was found

    Example:
        >>> find_last_complete_value('[{"a": 1}, {"b": 2}, {"c":')
        '[{"a": 1}, {"b": 2}]'
    """
    stack: List[str] = []
    in_string = False
    escaped = False
    last_close = -1
    open_at_last_close: List[str] = []
    started = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in CLOSERS:
            stack.append(char)
            started = True
        elif char in ("}", "]"):
            if not stack or CLOSERS[stack[-1]] != char:
                # Mismatched bracket; keep what was complete before it
                break
            stack.pop()
            last_close = index
            open_at_last_close = list(stack)
            if not stack and started:
                return text[: index + 1]

    if last_close == -1:
        return None

    trimmed = text[: last_close + 1].rstrip()
    return trimmed + "".join(CLOSERS[opener] for opener in reversed(open_at_last_close))


def extract_json_objects(text: str) -> List[Dict[str, Any]]:
    """Extract individually parseable objects from broken JSON.

    Objects without an ``id`` get a synthetic positional id (their index among
    the recovered objects) so callers keyed by position can still map them.

    Args:
        text: Broken JSON text

    Returns:
        List of recovered objects, possibly empty
    """
    objects = []
    for match in OBJECT_PATTERN.finditer(text):
        candidate = remove_trailing_commas(match.group(0))
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and parsed:
            objects.append(parsed)

    for position, obj in enumerate(objects):
        obj.setdefault("id", str(position))

    if objects:
        LOGGER.info(f"Recovered {len(objects)} objects from malformed JSON using regex")
    return objects


def parse_json_safely(text: str) -> Union[Dict[str, Any], List[Any], None]:
    """Parse JSON from text, handling common LLM formatting issues.

    Handles:
    - Markdown code blocks (```json ... ```) and leading explanatory prose
    - Trailing commas before closing brackets
    - Concatenated JSON values (e.g., {...}\\n{...})
    - Truncated output (trimmed to the last complete value)
    - Otherwise malformed output (regex object extraction)

    Args:
        text: The text containing JSON

    Returns:
        Parsed JSON object or None if every recovery step fails
    """
    if not text or not text.strip():
        return None

    cleaned = remove_trailing_commas(strip_markdown_fences(text))

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        LOGGER.warning(f"Initial JSON parse failed: {e}, attempting repairs...")

        if "Extra data" in str(e):
            merged = _parse_concatenated_json(cleaned)
            if merged is not None:
                LOGGER.info("Parsed concatenated JSON values into a single result")
                return merged

    trimmed = find_last_complete_value(cleaned)
    if trimmed:
        try:
            result = json.loads(remove_trailing_commas(trimmed))
            LOGGER.info(f"Parsed truncated JSON after trimming {len(cleaned) - len(trimmed)} trailing characters")
            return result
        except json.JSONDecodeError:
            LOGGER.debug("Bracket-balance trimming did not yield valid JSON")

    objects = extract_json_objects(cleaned)
    if objects:
        return objects

    LOGGER.error(f"Failed to parse JSON response ({len(text)} chars)")
    return None


def parse_json_array(text: str) -> List[Any]:
    """Parse a response that is expected to be a JSON array.

    A dict wrapping a single list (e.g. ``{"items": [...]}``) is unwrapped and
    a bare object becomes a one-element list.

    Returns:
        The parsed list, or an empty list when nothing could be recovered
    """
    data = parse_json_safely(text)
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        list_values = [value for value in data.values() if isinstance(value, list)]
        if len(list_values) == 1:
            return list_values[0]
        return [data]
    return []


def _parse_concatenated_json(text: str) -> Union[Dict[str, Any], List[Any], None]:
    """Decode back-to-back JSON values and merge them."""
    decoder = json.JSONDecoder()
    results = []
    idx = 0

    while idx < len(text):
        while idx < len(text) and text[idx] in " \t\n\r,":
            idx += 1
        if idx >= len(text):
            break
        try:
            obj, end_idx = decoder.raw_decode(text, idx)
            results.append(obj)
            idx = end_idx
        except json.JSONDecodeError:
            next_positions = [pos for pos in (text.find("{", idx + 1), text.find("[", idx + 1)) if pos != -1]
            if not next_positions:
                break
            idx = min(next_positions)

    if not results:
        return None
    return _merge_json_objects(results)


def _merge_json_objects(objects: List[Any]) -> Union[Dict[str, Any], List[Any]]:
    """Merge parsed JSON values: dicts are merged, lists are flattened."""
    if len(objects) == 1:
        return objects[0]

    if all(isinstance(obj, dict) for obj in objects):
        merged: Dict[str, Any] = {}
        for obj in objects:
            for key, value in obj.items():
                existing = merged.get(key)
                if isinstance(existing, list) and isinstance(value, list):
                    merged[key] = existing + value
                else:
                    merged[key] = value
        return merged

    flattened: List[Any] = []
    for obj in objects:
        if isinstance(obj, list):
            flattened.extend(obj)
        else:
            flattened.append(obj)
    return flattened


def extract_field_from_broken_json(text: str, field_name: str) -> Optional[str]:
    """Extract a specific string field from broken JSON using regex.

    Args:
        text: The text containing broken JSON
        field_name: The key to extract

    Returns:
        Extracted value or None
    """
    pattern = f'"{re.escape(field_name)}"\\s*:\\s*"((?:[^"\\\\]|\\\\.)*)"'
    match = re.search(pattern, text, re.DOTALL)
    if not match:
        return None
    value = match.group(1)
    return value.replace('\\"', '"').replace("\\n", "\n").replace("\\\\", "\\")
