"""Best-effort recovery of malformed JSON emitted by the LLM.

LLM completions that are supposed to hold a single JSON object fail in a
small number of recurring ways: prose or code fences around the object,
trailing commas, dropped commas between lines, strings cut off at a line
break, and truncated output with unbalanced brackets.
:class:`ResponseRepairParser` tries an ordered ladder of repairs and only
raises when every stage fails.
"""

from __future__ import annotations

import json
import re
from enum import StrEnum
from typing import Any

import structlog

from angle_finder.exceptions import JSONRepairError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ERROR_CONTEXT_CHARS = 100

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")

# (pattern, replacement) pairs inserting commas dropped between lines
_MISSING_COMMA_FIXES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r'"(\s*)\n(\s*)"(?=[a-zA-Z])'), '",\n\\2"'),
    (re.compile(r"}(\s*)\n(\s*){"), "},\n\\2{"),
    (re.compile(r"](\s*)\n(\s*)\["), "],\n\\2["),
    (re.compile(r'(\d)(\s*)\n(\s*)"(?=[a-zA-Z])'), '\\1,\n\\3"'),
)

_CLOSERS = {"{": "}", "[": "]"}


class RepairStage(StrEnum):
    """Which rung of the repair ladder produced the parsed value."""

    AS_IS = "as_is"
    SYNTACTIC = "syntactic"
    STRUCTURAL = "structural"


# ---------------------------------------------------------------------------
# Individual repairs
# ---------------------------------------------------------------------------


def extract_json_block(text: str) -> str:
    """Return the fenced code block content, else the outermost ``{...}`` span.

    Text with neither is returned unchanged.
    """
    fence = _FENCE_RE.search(text)
    if fence:
        return fence.group(1).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        return text[start : end + 1]
    return text


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def insert_missing_commas(text: str) -> str:
    for pattern, replacement in _MISSING_COMMA_FIXES:
        text = pattern.sub(replacement, text)
    return text


def _ends_inside_string(line: str) -> bool:
    in_string = False
    escaped = False
    for char in line:
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = in_string
        elif char == '"':
            in_string = not in_string
    return in_string


def close_open_strings(text: str) -> str:
    """Terminate string literals left open at the end of a line.

    JSON strings cannot span raw newlines, so a line that ends while still
    inside a string is closed with a quote before its trailing whitespace.
    """
    lines = text.split("\n")
    for index, line in enumerate(lines):
        if _ends_inside_string(line):
            stripped = line.rstrip()
            lines[index] = stripped + '"' + line[len(stripped) :]
    return "\n".join(lines)


def strip_control_chars(text: str) -> str:
    """Remove control characters other than tab, newline and carriage return."""
    return _CONTROL_CHARS_RE.sub("", text)


def balance_brackets(text: str) -> str:
    """Append the closing characters needed to balance ``{}`` and ``[]``.

    Brackets inside string literals are ignored. A string still open at
    the end of the text is closed first, and the closers are appended in
    the reverse order of their openers.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
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
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]") and stack and stack[-1] == char:
            stack.pop()

    if in_string:
        text += '"'
    return text.rstrip() + "".join(reversed(stack))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class ResponseRepairParser:
    """Parse LLM completions expected to contain one JSON object.

    Attributes:
        last_stage: The ladder stage that produced the most recent result,
            or ``None`` before the first successful parse.
    """

    def __init__(self) -> None:
        self.last_stage: RepairStage | None = None

    def parse(self, raw_text: str) -> Any:
        """Parse ``raw_text``, repairing it as needed.

        Args:
            raw_text: The full LLM completion.

        Returns:
            The decoded JSON value.

        Raises:
            JSONRepairError: If every repair stage fails. The error carries
                the failure offset and the surrounding text window.
        """
        candidate = extract_json_block(raw_text)

        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as exc:
            logger.debug("json_parse_failed", stage=RepairStage.AS_IS, error=exc.msg)
        else:
            self.last_stage = RepairStage.AS_IS
            return value

        repaired = strip_trailing_commas(
            insert_missing_commas(close_open_strings(candidate))
        )
        try:
            value = json.loads(repaired)
        except json.JSONDecodeError as exc:
            logger.debug(
                "json_parse_failed", stage=RepairStage.SYNTACTIC, error=exc.msg
            )
        else:
            self.last_stage = RepairStage.SYNTACTIC
            logger.info("json_repaired", stage=RepairStage.SYNTACTIC)
            return value

        repaired = strip_trailing_commas(
            balance_brackets(strip_control_chars(repaired))
        )
        try:
            value = json.loads(repaired)
        except json.JSONDecodeError as exc:
            start = max(0, exc.pos - ERROR_CONTEXT_CHARS)
            context = repaired[start : exc.pos + ERROR_CONTEXT_CHARS]
            logger.warning(
                "json_repair_failed",
                position=exc.pos,
                context=context,
                error=exc.msg,
            )
            raise JSONRepairError(
                f"Failed to parse JSON after repairs: {exc.msg} "
                f"(position {exc.pos}, near ...{context}...)",
                position=exc.pos,
                context=context,
            ) from exc

        self.last_stage = RepairStage.STRUCTURAL
        logger.info("json_repaired", stage=RepairStage.STRUCTURAL)
        return value
