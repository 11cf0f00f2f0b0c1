"""Parsing of structured blocks embedded in the advisor's replies.

A reply may end with a marker such as ``【汇报提取】`` followed by a fenced
JSON block. The block is located, parsed leniently, checked against the
acceptance rules and validated into one of the closed payload variants. Any
failure leaves the caller without a payload; the conversation simply keeps
collecting.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, Generic, List, Mapping, Optional, Sequence, TypeVar

from pydantic import TypeAdapter, ValidationError

from . import prompts, rules
from .schemas import (
    ClientType,
    ExtractionPayload,
    KeyResult,
    ProjectChatPayload,
    ProjectIntakePayload,
    ProjectStage,
    ReportAnalysisResult,
    TaskFollowUpPayload,
)

logger = logging.getLogger(__name__)

P = TypeVar("P")

_MARKED_FENCE = re.compile(r"\s*```(?:json)?\s*([\s\S]*?)\s*```")
_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SECTION_END = re.compile(r"\n\s*\n")
_KR_TAG = re.compile(r"\s*\[KR[:：]\s*([^\]]+)\]")
_DATE_PREFIX = re.compile(r"^(今天|明天|后天|本周.+?)[:：]\s*")
_DATE_HINT = re.compile(r"(今天|明天|后天|本周[一二三四五六日天])")
_WEEKDAYS = {"一": 1, "二": 2, "三": 3, "四": 4, "五": 5, "六": 6, "日": 7, "天": 7}

_payload_adapter: TypeAdapter = TypeAdapter(ExtractionPayload)


class ExtractionError(ValueError):
    """Raised when a located block cannot be decoded into a JSON object."""


@dataclass
class TaggedBlock:
    """A fenced JSON block and the span of reply text it occupies."""

    raw: str
    start: int
    end: int


@dataclass
class ExtractionOutcome(Generic[P]):
    """Text to show the user plus the validated payload, if any."""

    display_text: str
    payload: Optional[P] = None
    parse_failed: bool = False
    draft: Optional[Dict[str, Any]] = None


def find_block(text: str, marker: str) -> Optional[TaggedBlock]:
    """Locate the fenced block following ``marker``.

    A bare ```` ```json ```` fence is accepted when the marker is missing.
    """

    index = text.find(marker)
    if index >= 0:
        match = _MARKED_FENCE.match(text, index + len(marker))
        if match:
            return TaggedBlock(match.group(1), index, match.end())

    match = _JSON_FENCE.search(text)
    if match:
        start = index if 0 <= index < match.start() else match.start()
        return TaggedBlock(match.group(1), start, match.end())
    return None


def strip_span(text: str, start: int, end: int) -> str:
    return (text[:start] + text[end:]).strip()


def parse_json_lenient(raw: str) -> Dict[str, Any]:
    """Decode a JSON object, tolerating trailing commas."""

    candidates = [raw, _TRAILING_COMMA.sub(r"\1", raw)]
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(value, dict):
            raise ExtractionError("Extraction block must contain a JSON object.")
        return value
    raise ExtractionError("Extraction block is not valid JSON.")


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _parse_date(value: Any) -> Optional[date]:
    text = _clean(value)
    if text is None:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        logger.debug("Ignoring unparseable date %r", value)
        return None


def _enum_or_none(enum_cls, value: Any):
    try:
        return enum_cls(_clean(value))
    except ValueError:
        return None


def _clean_okr(raw: Any) -> Optional[Dict[str, Any]]:
    if not rules.passes(raw, rules.okr_suggestion_rules()):
        return None
    key_results = [kr.strip() for kr in raw["keyResults"] if _clean(kr)]
    return {"objective": raw["objective"].strip(), "key_results": key_results}


def _clean_task(raw: Any) -> Optional[Dict[str, Any]]:
    if not rules.passes(raw, rules.task_suggestion_rules()):
        return None
    day = _parse_date(raw.get("date"))
    if day is None:
        return None
    return {
        "content": raw["content"].strip(),
        "date": day,
        "suggested_kr_content": _clean(raw.get("suggestedKRContent")),
    }


def _validate(data: Dict[str, Any]):
    return _payload_adapter.validate_python(data)


def _decode_block(text: str, marker: str) -> tuple[Optional[Dict[str, Any]], ExtractionOutcome]:
    """Shared first step: find the block, decode it, compute the display text."""

    block = find_block(text, marker)
    if block is None:
        return None, ExtractionOutcome(text.strip())

    display = strip_span(text, block.start, block.end)
    try:
        raw = parse_json_lenient(block.raw)
    except ExtractionError as exc:
        logger.warning("Discarding malformed extraction block: %s", exc)
        return None, ExtractionOutcome(display or text.strip(), parse_failed=True)
    return raw, ExtractionOutcome(display)


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


def parse_intake_reply(
    text: str, draft: Optional[Mapping[str, Any]] = None
) -> ExtractionOutcome[ProjectIntakePayload]:
    """Parse an intake reply, filling in fields gathered by earlier partial blocks.

    Non-empty fields of the new block override ``draft``. When the merged
    fields are still not acceptable they come back as ``outcome.draft``.
    """

    decoded, outcome = _decode_block(text, prompts.INTAKE_MARKER)
    if not isinstance(decoded, Mapping):
        return outcome

    raw = {**(draft or {}), **{key: value for key, value in decoded.items() if value not in (None, "")}}
    if not rules.passes(raw, rules.intake_rules()):
        outcome.draft = raw
        return outcome

    data = {
        "kind": "project_intake",
        "name": raw["name"].strip(),
        "client_name": raw["clientName"].strip(),
        "client_type": _enum_or_none(ClientType, raw.get("clientType")),
        "stage": _enum_or_none(ProjectStage, raw.get("stage")),
        "suggested_okr": _clean_okr(raw.get("suggestedOKR")),
    }
    for key, field in (
        ("description", "description"),
        ("budget", "budget"),
        ("decisionMaker", "decision_maker"),
        ("competitors", "competitors"),
        ("nextStep", "next_step"),
    ):
        data[field] = _clean(raw.get(key))

    try:
        outcome.payload = _validate(data)
    except ValidationError as exc:
        logger.warning("Intake payload rejected: %s", exc)
    return outcome


def parse_daily_report_reply(text: str) -> ExtractionOutcome[ReportAnalysisResult]:
    raw, outcome = _decode_block(text, prompts.REPORT_MARKER)
    if raw is None or not rules.passes(raw, rules.report_rules()):
        return outcome

    tasks = raw.get("suggestedTasks") if isinstance(raw.get("suggestedTasks"), list) else []
    updates_raw = raw.get("projectUpdates") if isinstance(raw.get("projectUpdates"), Mapping) else {}
    updates = {
        "description": _clean(updates_raw.get("description")),
        "budget": _clean(updates_raw.get("budget")),
        "decision_maker": _clean(updates_raw.get("decisionMaker")),
        "competitors": _clean(updates_raw.get("competitors")),
        "next_step": _clean(updates_raw.get("nextStep")),
    }
    data = {
        "kind": "daily_report",
        "analysis": _clean(raw.get("analysis")) or "",
        "suggested_tasks": [t for t in (_clean_task(task) for task in tasks) if t is not None],
        "suggested_okr": _clean_okr(raw.get("suggestedOKR")),
        "project_updates": updates if any(updates.values()) else None,
    }

    try:
        payload = _validate(data)
    except ValidationError as exc:
        logger.warning("Daily report payload rejected: %s", exc)
        return outcome

    if not (payload.analysis or payload.suggested_tasks or payload.suggested_okr or payload.project_updates):
        logger.info("Daily report payload carried nothing reviewable")
        return outcome
    outcome.payload = payload
    return outcome


def parse_task_follow_up_reply(text: str) -> ExtractionOutcome[TaskFollowUpPayload]:
    completed = prompts.TASK_DONE_MARKER in text
    cleaned = text.replace(prompts.TASK_DONE_MARKER, "")

    new_task = None
    block = find_block(cleaned, prompts.NEW_TASK_MARKER)
    parse_failed = False
    if block is not None:
        display = strip_span(cleaned, block.start, block.end)
        try:
            new_task = _clean_task(parse_json_lenient(block.raw))
        except ExtractionError as exc:
            logger.warning("Discarding malformed task block: %s", exc)
            parse_failed = True
    else:
        display = cleaned.replace(prompts.NEW_TASK_MARKER, "").strip()

    outcome: ExtractionOutcome[TaskFollowUpPayload] = ExtractionOutcome(display, parse_failed=parse_failed)
    if completed or new_task is not None:
        outcome.payload = _validate({"kind": "task_follow_up", "task_completed": completed, "new_task": new_task})
    return outcome


def resolve_date_hint(line: str, today: date) -> date:
    """Turn a relative Chinese date hint into a date; tomorrow when absent."""

    match = _DATE_HINT.search(line)
    hint = match.group(1) if match else None
    if hint == "今天":
        return today
    if hint == "后天":
        return today + timedelta(days=2)
    if hint and hint.startswith("本周"):
        target = _WEEKDAYS[hint[-1]]
        return today + timedelta(days=(target - today.isoweekday() + 7) % 7)
    return today + timedelta(days=1)


def _section(text: str, marker: str) -> Optional[tuple[int, int, List[str]]]:
    index = text.find(marker)
    if index < 0:
        return None
    body_start = index + len(marker)
    end_match = _SECTION_END.search(text, body_start)
    end = end_match.start() if end_match else len(text)
    lines = [line.strip() for line in text[body_start:end].splitlines() if line.strip().startswith("-")]
    return index, end, lines


def parse_task_line(line: str, today: date) -> Optional[Dict[str, Any]]:
    tag = _KR_TAG.search(line)
    kr_ref = tag.group(1).strip() if tag else None
    without_tag = _KR_TAG.sub("", line)
    content = _DATE_PREFIX.sub("", re.sub(r"^-\s*", "", without_tag.strip())).strip()
    if not content:
        return None
    return {"content": content, "date": resolve_date_hint(without_tag, today), "kr_ref": kr_ref}


def parse_project_chat_reply(text: str, today: date) -> ExtractionOutcome[ProjectChatPayload]:
    spans = []
    tasks: List[Dict[str, Any]] = []
    key_results: List[str] = []

    task_section = _section(text, prompts.TASK_LIST_MARKER)
    if task_section is not None:
        start, end, lines = task_section
        spans.append((start, end))
        tasks = [t for t in (parse_task_line(line, today) for line in lines) if t is not None]

    kr_section = _section(text, prompts.NEW_KR_MARKER)
    if kr_section is not None:
        start, end, lines = kr_section
        spans.append((start, end))
        key_results = [kr for kr in (re.sub(r"^-\s*", "", line).strip() for line in lines) if kr]

    display = text
    for start, end in sorted(spans, reverse=True):
        display = display[:start] + display[end:]
    outcome: ExtractionOutcome[ProjectChatPayload] = ExtractionOutcome(display.strip() or text.strip())

    if tasks or key_results:
        outcome.payload = _validate({"kind": "project_chat", "tasks": tasks, "key_results": key_results})
    return outcome


# ---------------------------------------------------------------------------
# Key result cross-referencing
# ---------------------------------------------------------------------------


def match_key_result(reference: Optional[str], candidates: Sequence[KeyResult]) -> Optional[KeyResult]:
    """Best-effort lookup of the key result a suggestion refers to.

    Tries an id match, then exact text, then substring containment in either
    direction. Ambiguous or absent matches return ``None``.
    """

    ref = (reference or "").strip()
    if not ref:
        return None

    for kr in candidates:
        if kr.id == ref:
            return kr

    exact = [kr for kr in candidates if kr.content.strip() == ref]
    if len(exact) == 1:
        return exact[0]
    if exact:
        return None

    contained = [kr for kr in candidates if kr.content and (ref in kr.content or kr.content in ref)]
    if len(contained) == 1:
        return contained[0]
    if contained:
        logger.debug("Ambiguous key result reference %r matched %s candidates", ref, len(contained))
    return None
