"""
Layered recovery of structured itinerary data from raw generation text.

Stages run in order and stop at the first one whose output passes the
SchemaValidator:

1. direct          json.loads on the raw text
2. extracted       strip markdown fences / prose, keep first '{' .. last '}'
3. syntax_repair   trailing commas, smart/single quotes, control chars, unquoted keys
4. aggressive      additionally quotes bare values (also stringifies numbers/booleans)
5. structural      regex skeleton from title/subtitle plus salvaged activity objects
6. json_repair     the json-repair library
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from json_repair import repair_json

from itinerary_engine.core.cancellation import CancellationToken
from itinerary_engine.core.fallback_synthesizer import FallbackSynthesizer
from itinerary_engine.core.schema_validator import SchemaValidator
from itinerary_engine.core.schemas import Itinerary

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?([\s\S]*?)\n?\s*```")
_STRING_RE = re.compile(r'"(?:\\.|[^"\\])*"')
_SINGLE_QUOTED_RE = re.compile(r"'((?:\\.|[^'\\])*)'")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$]*)(\s*:)")
_BARE_VALUE_RE = re.compile(r':\s*([^",{\[\]}\s]+)(\s*[,}\]])')
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_LINE_BREAK_RE = re.compile(r"[\n\r\t]")

_TITLE_RE = re.compile(r'"title"\s*:\s*"([^"]+)"')
_SUBTITLE_RE = re.compile(r'"subtitle"\s*:\s*"([^"]+)"')
_PERIOD_RE = re.compile(r'"period"\s*:\s*"([^"]+)"')
_ACTIVITY_OBJECT_RE = re.compile(r'\{[^{}]*"title"[^{}]*\}')

SMART_DOUBLE_QUOTES = "“”„‟″"
SMART_SINGLE_QUOTES = "‘’‚‛′"

MAX_NESTED_DEPTH = 5


@dataclass(frozen=True)
class ParsedObject:
    data: dict[str, Any]
    itinerary: Itinerary
    stage: str


@dataclass(frozen=True)
class RecoveryFailure:
    reason: str
    stages_tried: tuple[str, ...] = ()


RecoveryResult = ParsedObject | RecoveryFailure


# =============================================================================
# Text transformations (each usable on its own)
# =============================================================================


def _outside_strings(text: str, transform: Callable[[str], str]) -> str:
    """Apply transform only to the parts of text that are not double-quoted strings."""
    out = []
    last = 0
    for match in _STRING_RE.finditer(text):
        out.append(transform(text[last : match.start()]))
        out.append(match.group(0))
        last = match.end()
    out.append(transform(text[last:]))
    return "".join(out)


def strip_code_fences(text: str) -> str:
    for match in _FENCE_RE.finditer(text):
        body = match.group(1).strip()
        if "{" in body:
            return body
    return text.strip()


def extract_json_block(text: str) -> str:
    """Drop fences and surrounding prose, keeping the first '{' through the last '}'."""
    body = strip_code_fences(text)
    start = body.find("{")
    end = body.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object braces found")
    return body[start : end + 1]


def remove_trailing_commas(text: str) -> str:
    return _outside_strings(text, lambda s: _TRAILING_COMMA_RE.sub(r"\1", s))


def normalize_quotes(text: str) -> str:
    """Turn smart quotes and single-quoted strings into standard double-quoted JSON strings."""

    def smart(segment: str) -> str:
        for ch in SMART_DOUBLE_QUOTES:
            segment = segment.replace(ch, '"')
        for ch in SMART_SINGLE_QUOTES:
            segment = segment.replace(ch, "'")
        return segment

    def single(segment: str) -> str:
        return _SINGLE_QUOTED_RE.sub(
            lambda m: json.dumps(m.group(1).replace("\\'", "'"), ensure_ascii=False), segment
        )

    text = _outside_strings(text, smart)
    return _outside_strings(text, single)


def strip_control_characters(text: str) -> str:
    return _CONTROL_RE.sub("", _LINE_BREAK_RE.sub(" ", text))


def quote_unquoted_keys(text: str) -> str:
    return _outside_strings(text, lambda s: _UNQUOTED_KEY_RE.sub(r'\1"\2"\3', s))


def repair_syntax(text: str) -> str:
    try:
        text = extract_json_block(text)
    except ValueError:
        text = text.strip()
    text = strip_control_characters(text)
    text = normalize_quotes(text)
    text = remove_trailing_commas(text)
    return quote_unquoted_keys(text)


def quote_bare_values(text: str) -> str:
    # Known risk: numeric and boolean literals are quoted too ("42" instead of 42)
    return _outside_strings(text, lambda s: _BARE_VALUE_RE.sub(r': "\1"\2', s))


def decode_nested(value: Any, depth: int = 0) -> Any:
    """Re-parse JSON-looking string values produced by double encoding."""
    if depth > MAX_NESTED_DEPTH:
        return value

    if isinstance(value, str):
        trimmed = value.strip()
        if (trimmed.startswith("{") and trimmed.endswith("}")) or (
            trimmed.startswith("[") and trimmed.endswith("]")
        ):
            try:
                return decode_nested(json.loads(trimmed), depth + 1)
            except ValueError:
                return value
        return value
    if isinstance(value, dict):
        return {k: decode_nested(v, depth + 1) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_nested(v, depth + 1) for v in value]
    return value


# =============================================================================
# Stages
# =============================================================================


def parse_direct(text: str) -> Any:
    return json.loads(text)


def parse_extracted(text: str) -> Any:
    return json.loads(extract_json_block(text))


def parse_syntax_repaired(text: str) -> Any:
    return json.loads(repair_syntax(text))


def parse_aggressive(text: str) -> Any:
    return json.loads(quote_bare_values(repair_syntax(text)))


def _load_fragment(fragment: str) -> Any:
    try:
        return json.loads(fragment)
    except ValueError:
        return json.loads(repair_syntax(fragment))


def parse_structural(text: str) -> dict[str, Any]:
    """
    Rebuild a minimal object from recognizable fragments of a broken response.

    Complete activity objects are salvaged and grouped under the closest
    preceding "period" label.
    """
    title = _TITLE_RE.search(text)
    subtitle = _SUBTITLE_RE.search(text)
    periods = [(m.start(), m.group(1)) for m in _PERIOD_RE.finditer(text)]

    grouped: dict[str, list[dict[str, Any]]] = {}
    for match in _ACTIVITY_OBJECT_RE.finditer(text):
        try:
            fragment = _load_fragment(match.group(0))
        except ValueError:
            continue
        if not isinstance(fragment, dict) or "period" in fragment or "items" in fragment:
            continue
        label = "Day 1 - Morning"
        for position, name in periods:
            if position < match.start():
                label = name
            else:
                break
        grouped.setdefault(label, []).append(fragment)

    if not title and not subtitle and not grouped:
        raise ValueError("Could not reconstruct structure")

    items = [{"period": label, "activities": acts} for label, acts in grouped.items()]
    return {
        "title": title.group(1) if title else "",
        "subtitle": subtitle.group(1) if subtitle else "Please try generating again",
        "items": items,
    }


def parse_with_json_repair(text: str) -> Any:
    repaired = repair_json(text, return_objects=True)
    if not isinstance(repaired, dict) or not repaired:
        raise ValueError("json_repair produced no object")
    return repaired


STAGES: list[tuple[str, Callable[[str], Any]]] = [
    ("direct", parse_direct),
    ("extracted", parse_extracted),
    ("syntax_repair", parse_syntax_repaired),
    ("aggressive", parse_aggressive),
    ("structural", parse_structural),
    ("json_repair", parse_with_json_repair),
]


class ResponseRecoveryChain:
    """Turns arbitrary backend text into a validated itinerary or a RecoveryFailure."""

    def __init__(
        self,
        validator: SchemaValidator | None = None,
        stages: list[tuple[str, Callable[[str], Any]]] | None = None,
    ) -> None:
        self.validator = validator or SchemaValidator()
        self.stages = stages or STAGES

    def recover(self, text: Any, cancel: CancellationToken | None = None) -> RecoveryResult:
        """
        Run the recovery stages in order.

        Args:
            text: Raw backend output
            cancel: Optional token checked before each stage

        Returns:
            ParsedObject from the first stage whose output validates, else RecoveryFailure
        """
        if not isinstance(text, str) or not text.strip():
            return RecoveryFailure("empty response")

        tried: list[str] = []
        for name, stage in self.stages:
            if cancel is not None and cancel.cancelled:
                return RecoveryFailure("cancelled", tuple(tried))
            tried.append(name)

            try:
                candidate = decode_nested(stage(text))
            except Exception as e:
                logger.debug(f"[Recovery] Stage '{name}' failed: {e}")
                continue

            itinerary = self.validator.validate(candidate)
            if itinerary is not None:
                if name != "direct":
                    logger.info(f"[Recovery] Recovered itinerary with stage '{name}'")
                return ParsedObject(data=candidate, itinerary=itinerary, stage=name)
            logger.debug(f"[Recovery] Stage '{name}' parsed but failed validation")

        logger.warning(f"[Recovery] All recovery stages failed ({len(text)} chars)")
        return RecoveryFailure("all recovery stages failed", tuple(tried))

    def recover_itinerary(
        self, text: Any, synthesizer: FallbackSynthesizer | None = None
    ) -> Itinerary:
        """Total variant of recover: unrecoverable text yields the fallback itinerary."""
        result = self.recover(text)
        if isinstance(result, ParsedObject):
            return result.itinerary
        return (synthesizer or FallbackSynthesizer()).synthesize(None)
