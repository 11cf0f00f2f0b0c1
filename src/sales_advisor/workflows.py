"""Chat-driven extraction workflows.

Every workflow follows the same state machine::

    collecting --(valid payload)--> ready --> reviewing --commit()--> committed
        ^                                         |
        +---------------- resume() ---------------+

While collecting, each user message is appended to the transcript and the
whole transcript is sent to the model. A reply carrying an acceptable
payload moves the workflow to review, where every proposed item starts out
selected. Committing applies the selected items to the application state
and never calls the model again. Project chat confirms the commit in the
transcript and goes back to collecting.
"""
from __future__ import annotations

import logging
import random
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, Iterable, List, Optional, Set, TypeVar

from . import extraction, llm_client, prompts
from .schemas import (
    OKR,
    ChatMessage,
    ClientType,
    KeyResult,
    ProgressEntry,
    ProgressType,
    Project,
    ProjectChatPayload,
    ProjectIntakePayload,
    ProjectStage,
    ReportAnalysisResult,
    Task,
    TaskFollowUpPayload,
    generate_id,
)
from .state import AppState, NotFoundError

logger = logging.getLogger(__name__)

P = TypeVar("P")

COLORS = ["#EF4444", "#F97316", "#EAB308", "#22C55E", "#3B82F6", "#8B5CF6", "#EC4899", "#06B6D4"]

CONNECTION_ERROR_REPLY = "连接出了点问题，请重试。"
NOT_CONFIGURED_REPLY = "AI 服务未配置（缺少 GEMINI_API_KEY），暂时无法对话。"
_READY_REPLY = "好，信息收集完毕！我帮你整理了一下，确认一下？"

TASKS = "tasks"
KEY_RESULTS = "keyResults"
PROJECT_FIELDS = "projectFields"
OKR_GROUP = "okr"
COMPLETION = "completion"

_NEW_KR_PREFIX = "new:"


class Phase(str, Enum):
    COLLECTING = "collecting"
    READY = "ready"
    REVIEWING = "reviewing"
    COMMITTED = "committed"


class WorkflowStateError(RuntimeError):
    """Raised when an operation is not allowed in the current phase."""


class Selection:
    """Which proposed items the user keeps, grouped by kind."""

    def __init__(self, groups: Optional[Dict[str, Iterable[Any]]] = None) -> None:
        self.available: Dict[str, Set[Any]] = {name: set(keys) for name, keys in (groups or {}).items()}
        self.chosen: Dict[str, Set[Any]] = {name: set(keys) for name, keys in self.available.items()}
        self.kr_mapping: Dict[int, str] = {}

    def set(self, group: str, key: Any, selected: bool) -> None:
        if key not in self.available.get(group, set()):
            raise KeyError(f"Unknown item {key!r} in group {group!r}")
        if selected:
            self.chosen[group].add(key)
        else:
            self.chosen[group].discard(key)

    def is_selected(self, group: str, key: Any) -> bool:
        return key in self.chosen.get(group, set())

    def selected(self, group: str) -> List[Any]:
        return sorted(self.chosen.get(group, set()))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: self.selected(name) for name in self.chosen}
        data["krMapping"] = dict(self.kr_mapping)
        return data


@dataclass
class CommitReport:
    """Everything a commit changed in the application state."""

    project: Optional[Project] = None
    okr: Optional[OKR] = None
    tasks: List[Task] = field(default_factory=list)
    new_key_results: List[KeyResult] = field(default_factory=list)
    progress: List[ProgressEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project.model_dump(mode="json", by_alias=True) if self.project else None,
            "okr": self.okr.model_dump(mode="json", by_alias=True) if self.okr else None,
            "tasks": [task.model_dump(mode="json", by_alias=True) for task in self.tasks],
            "newKeyResults": [kr.model_dump(mode="json", by_alias=True) for kr in self.new_key_results],
            "progress": [entry.model_dump(mode="json", by_alias=True) for entry in self.progress],
        }


# ---------------------------------------------------------------------------
# Shared commit helpers
# ---------------------------------------------------------------------------


def add_key_results(
    state: AppState,
    project: Project,
    contents: List[str],
    objective: Optional[str] = None,
    report: Optional[CommitReport] = None,
) -> List[KeyResult]:
    """Append key results to the project's OKR, creating the OKR if needed.

    Returns the newly created key results with their assigned ids.
    """

    if not contents:
        return []

    new_krs = [KeyResult(id=generate_id("kr"), content=content, progress=0) for content in contents]
    existing = state.okr_for_project(project.id)
    if existing is not None:
        okr = existing.model_copy(update={"key_results": [*existing.key_results, *new_krs]})
    else:
        okr = OKR(
            id=generate_id("okr"),
            project_id=project.id,
            objective=objective or f"推进{project.name}项目",
            key_results=new_krs,
        )
    result = state.upsert_okr(okr)
    if report is not None:
        report.okr = result.entity
        report.new_key_results.extend(new_krs)
        report.progress.extend(result.progress)
    return new_krs


def resolve_kr_id(
    manual: Optional[str],
    reference: Optional[str],
    existing: List[KeyResult],
    created: Dict[int, KeyResult],
) -> Optional[str]:
    """Pick the key result a committed task should link to.

    Order: manual choice, existing key results, key results created by this
    commit. An unresolvable reference yields ``None``.
    """

    if manual:
        if manual.startswith(_NEW_KR_PREFIX):
            try:
                kr = created.get(int(manual[len(_NEW_KR_PREFIX):]))
            except ValueError:
                kr = None
            return kr.id if kr else None
        if any(kr.id == manual for kr in existing):
            return manual

    match = extraction.match_key_result(reference, existing)
    if match is None:
        match = extraction.match_key_result(reference, list(created.values()))
    return match.id if match else None


# ---------------------------------------------------------------------------
# Base workflow
# ---------------------------------------------------------------------------


class ConversationWorkflow(ABC, Generic[P]):
    """Base class for the chat-driven extraction workflows."""

    kind: str = ""

    def __init__(self, state: AppState) -> None:
        self.state = state
        # Held while a send or commit runs; one action in flight per workflow.
        self._busy = threading.Lock()
        self.reset()

    # -- lifecycle ---------------------------------------------------------

    def reset(self) -> None:
        """Drop the transcript and any proposal; seed the opening greeting."""

        self.messages: List[ChatMessage] = []
        self.phase = Phase.COLLECTING
        self.payload: Optional[P] = None
        self.selection = Selection()
        self.last_report: Optional[CommitReport] = None
        self._append("assistant", self.greeting())

    @abstractmethod
    def greeting(self) -> str: ...

    @abstractmethod
    def system_prompt(self) -> str: ...

    @abstractmethod
    def parse_reply(self, text: str) -> extraction.ExtractionOutcome[P]: ...

    @abstractmethod
    def default_selection(self, payload: P) -> Selection: ...

    @abstractmethod
    def apply(self, payload: P, selection: Selection) -> CommitReport: ...

    # -- conversation ------------------------------------------------------

    def _append(self, role: str, content: str) -> ChatMessage:
        message = ChatMessage(id=generate_id("msg"), role=role, content=content)
        self.messages.append(message)
        return message

    def transcript(self) -> List[dict]:
        return [{"role": message.role, "content": message.content} for message in self.messages]

    def send(self, text: str) -> ChatMessage:
        """Send a user message and return the assistant's reply.

        A second call while the first is still waiting on the model raises
        :class:`WorkflowStateError`.
        """

        message = (text or "").strip()
        if not message:
            raise ValueError("Message must not be empty.")

        self._claim()
        try:
            return self._send_locked(message)
        finally:
            self._busy.release()

    def _claim(self) -> None:
        if not self._busy.acquire(blocking=False):
            raise WorkflowStateError("Another request on this conversation is still running.")

    def _send_locked(self, message: str) -> ChatMessage:
        if self.phase is not Phase.COLLECTING:
            raise WorkflowStateError(f"Cannot chat while {self.phase.value}; resume or commit first.")

        self._append("user", message)
        try:
            reply = llm_client.chat_complete(self.system_prompt(), self.transcript())
        except EnvironmentError as exc:
            logger.error("%s chat failed due to missing configuration", self.kind, exc_info=exc)
            return self._append("assistant", NOT_CONFIGURED_REPLY)
        except (RuntimeError, ValueError) as exc:
            logger.error("%s chat request failed", self.kind, exc_info=exc)
            return self._append("assistant", CONNECTION_ERROR_REPLY)

        outcome = self.parse_reply(reply)
        answer = self._append("assistant", outcome.display_text or _READY_REPLY)

        if outcome.payload is not None:
            self.payload = outcome.payload
            self.phase = Phase.READY
            logger.info("%s workflow extracted a payload", self.kind)
            self._begin_review()
        elif outcome.parse_failed:
            logger.info("%s workflow stays collecting after malformed block", self.kind)
        return answer

    def _begin_review(self) -> None:
        self.selection = self.default_selection(self.payload)
        self.phase = Phase.REVIEWING

    # -- review ------------------------------------------------------------

    def _require(self, phase: Phase) -> None:
        if self.phase is not phase:
            raise WorkflowStateError(f"Workflow is {self.phase.value}, expected {phase.value}.")

    def select(self, group: str, key: Any, selected: bool = True) -> None:
        self._require(Phase.REVIEWING)
        self.selection.set(group, key, selected)

    def map_task_to_kr(self, task_index: int, kr_id: Optional[str]) -> None:
        """Manually link a proposed task to a key result (``new:<n>`` for a proposed one)."""

        self._require(Phase.REVIEWING)
        if task_index not in self.selection.available.get(TASKS, set()):
            raise KeyError(f"Unknown task index {task_index}")
        if kr_id:
            self.selection.kr_mapping[task_index] = kr_id
        else:
            self.selection.kr_mapping.pop(task_index, None)

    def resume(self) -> None:
        """Discard the proposal and keep chatting."""

        self._require(Phase.REVIEWING)
        self.payload = None
        self.selection = Selection()
        self.phase = Phase.COLLECTING
        logger.info("%s workflow resumed collecting", self.kind)

    def commit(self) -> CommitReport:
        self._claim()
        try:
            self._require(Phase.REVIEWING)
            report = self.apply(self.payload, self.selection)
            self.phase = Phase.COMMITTED
            self.last_report = report
            logger.info(
                "%s workflow committed (tasks=%s, new KRs=%s)",
                self.kind,
                len(report.tasks),
                len(report.new_key_results),
            )
            self.after_commit(report)
        finally:
            self._busy.release()
        return report

    def after_commit(self, report: CommitReport) -> None:
        """Hook for workflows that keep the conversation going after a commit."""

    def snapshot(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "phase": self.phase.value,
            "messages": [m.model_dump(mode="json", by_alias=True) for m in self.messages],
            "payload": self.payload.model_dump(mode="json", by_alias=True) if self.payload is not None else None,
            "selection": self.selection.to_dict(),
        }


def _task_indices(count: int) -> List[int]:
    return list(range(count))


# ---------------------------------------------------------------------------
# New-project intake
# ---------------------------------------------------------------------------


class ProjectIntakeWorkflow(ConversationWorkflow[ProjectIntakePayload]):
    kind = "project_intake"

    def reset(self) -> None:
        self.color = random.choice(COLORS)
        # Fields from partial blocks, filled in by later turns.
        self.draft: Dict[str, Any] = {}
        super().reset()

    def greeting(self) -> str:
        return prompts.INTAKE_GREETING

    def system_prompt(self) -> str:
        return prompts.intake_system_prompt()

    def parse_reply(self, text: str):
        outcome = extraction.parse_intake_reply(text, self.draft)
        if outcome.draft is not None:
            self.draft = outcome.draft
            logger.debug("Intake draft now has fields %s", sorted(self.draft))
        return outcome

    def snapshot(self) -> Dict[str, Any]:
        data = super().snapshot()
        data["draft"] = dict(self.draft)
        return data

    def default_selection(self, payload: ProjectIntakePayload) -> Selection:
        okr = payload.suggested_okr
        return Selection(
            {
                OKR_GROUP: ["suggested"] if okr else [],
                KEY_RESULTS: _task_indices(len(okr.key_results)) if okr else [],
            }
        )

    def apply(self, payload: ProjectIntakePayload, selection: Selection) -> CommitReport:
        project = Project(
            id=generate_id("project"),
            name=payload.name,
            client_name=payload.client_name,
            client_type=payload.client_type or ClientType.END_CUSTOMER,
            stage=payload.stage or ProjectStage.FIRST_CONTACT,
            color=self.color,
            updated_at=datetime.now(timezone.utc),
            description=payload.description,
            budget=payload.budget,
            decision_maker=payload.decision_maker,
            competitors=payload.competitors,
            next_step=payload.next_step,
        )
        self.state.create_project(project)
        report = CommitReport(project=project)

        okr = payload.suggested_okr
        if okr and selection.is_selected(OKR_GROUP, "suggested"):
            contents = [okr.key_results[i] for i in selection.selected(KEY_RESULTS)]
            if contents:
                add_key_results(self.state, project, contents, okr.objective, report)
        report.project = self.state.get_project(project.id)
        return report


# ---------------------------------------------------------------------------
# Daily report
# ---------------------------------------------------------------------------


class DailyReportWorkflow(ConversationWorkflow[ReportAnalysisResult]):
    kind = "daily_report"

    def __init__(self, state: AppState, project_id: str) -> None:
        self.project_id = project_id
        state.get_project(project_id)
        super().__init__(state)

    def greeting(self) -> str:
        return prompts.daily_report_greeting(self.state.get_project(self.project_id))

    def system_prompt(self) -> str:
        project = self.state.get_project(self.project_id)
        okr = self.state.okr_for_project(self.project_id)
        tasks = self.state.tasks_for_project(self.project_id)
        return prompts.daily_report_system_prompt(
            project,
            [kr.content for kr in okr.key_results] if okr else [],
            [t.content for t in tasks if t.is_completed],
            [t.content for t in tasks if not t.is_completed],
            date.today(),
        )

    def parse_reply(self, text: str):
        return extraction.parse_daily_report_reply(text)

    def default_selection(self, payload: ReportAnalysisResult) -> Selection:
        okr = payload.suggested_okr
        return Selection(
            {
                TASKS: _task_indices(len(payload.suggested_tasks)),
                KEY_RESULTS: _task_indices(len(okr.key_results)) if okr else [],
                PROJECT_FIELDS: payload.project_updates.filled_fields() if payload.project_updates else [],
            }
        )

    def apply(self, payload: ReportAnalysisResult, selection: Selection) -> CommitReport:
        project = self.state.get_project(self.project_id)
        report = CommitReport()

        fields = selection.selected(PROJECT_FIELDS)
        if fields and payload.project_updates:
            changes = {name: getattr(payload.project_updates, name) for name in fields}
            project = self.state.update_project(project.model_copy(update=changes)).entity

        current_okr = self.state.okr_for_project(self.project_id)
        existing = list(current_okr.key_results) if current_okr else []

        created: Dict[int, KeyResult] = {}
        okr = payload.suggested_okr
        kr_indices = selection.selected(KEY_RESULTS)
        if okr and kr_indices:
            new_krs = add_key_results(
                self.state, project, [okr.key_results[i] for i in kr_indices], okr.objective, report
            )
            created = dict(zip(kr_indices, new_krs))

        tasks = []
        for index in selection.selected(TASKS):
            suggestion = payload.suggested_tasks[index]
            kr_id = resolve_kr_id(
                selection.kr_mapping.get(index), suggestion.suggested_kr_content, existing, created
            )
            tasks.append(
                Task(
                    id=generate_id("task"),
                    project_id=self.project_id,
                    content=suggestion.content,
                    date=suggestion.date,
                    kr_id=kr_id,
                )
            )
        self.state.create_tasks(tasks)
        report.tasks = tasks

        if payload.analysis:
            result = self.state.add_progress(self.project_id, ProgressType.REPORT, "今日汇报", payload.analysis)
            report.progress.extend(result.progress)

        report.project = self.state.get_project(self.project_id)
        return report


# ---------------------------------------------------------------------------
# Task follow-up
# ---------------------------------------------------------------------------


class TaskFollowUpWorkflow(ConversationWorkflow[TaskFollowUpPayload]):
    kind = "task_follow_up"

    def __init__(self, state: AppState, task_id: str) -> None:
        self.task_id = task_id
        state.get_task(task_id)
        super().__init__(state)

    def greeting(self) -> str:
        return prompts.task_follow_up_greeting(self.state.get_task(self.task_id))

    def system_prompt(self) -> str:
        task = self.state.get_task(self.task_id)
        project = None
        if task.project_id:
            try:
                project = self.state.get_project(task.project_id)
            except NotFoundError:
                logger.debug("Task %s points at missing project %s", task.id, task.project_id)
        return prompts.task_follow_up_system_prompt(task, project, self.state.tasks_on(task.date), date.today())

    def parse_reply(self, text: str):
        return extraction.parse_task_follow_up_reply(text)

    def default_selection(self, payload: TaskFollowUpPayload) -> Selection:
        task = self.state.get_task(self.task_id)
        return Selection(
            {
                COMPLETION: ["task"] if payload.task_completed and not task.is_completed else [],
                TASKS: [0] if payload.new_task else [],
            }
        )

    def apply(self, payload: TaskFollowUpPayload, selection: Selection) -> CommitReport:
        report = CommitReport()
        if selection.is_selected(COMPLETION, "task"):
            result = self.state.complete_task(self.task_id)
            report.progress.extend(result.progress)

        if payload.new_task and selection.is_selected(TASKS, 0):
            parent = self.state.get_task(self.task_id)
            task = Task(
                id=generate_id("task"),
                project_id=parent.project_id,
                content=payload.new_task.content,
                date=payload.new_task.date,
            )
            self.state.create_task(task)
            report.tasks.append(task)
        return report


# ---------------------------------------------------------------------------
# Project chat
# ---------------------------------------------------------------------------


class ProjectChatWorkflow(ConversationWorkflow[ProjectChatPayload]):
    """Free-form advice about one project that can propose tasks and key results."""

    kind = "project_chat"

    def __init__(self, state: AppState, project_id: str) -> None:
        self.project_id = project_id
        state.get_project(project_id)
        super().__init__(state)

    def greeting(self) -> str:
        return prompts.project_chat_greeting(self.state.get_project(self.project_id))

    def system_prompt(self) -> str:
        return prompts.project_chat_system_prompt(
            self.state.get_project(self.project_id),
            self.state.okr_for_project(self.project_id),
            self.state.tasks_for_project(self.project_id),
        )

    def parse_reply(self, text: str):
        return extraction.parse_project_chat_reply(text, date.today())

    def default_selection(self, payload: ProjectChatPayload) -> Selection:
        return Selection(
            {
                TASKS: _task_indices(len(payload.tasks)),
                KEY_RESULTS: _task_indices(len(payload.key_results)),
            }
        )

    def apply(self, payload: ProjectChatPayload, selection: Selection) -> CommitReport:
        project = self.state.get_project(self.project_id)
        report = CommitReport()
        okr = self.state.okr_for_project(self.project_id)
        existing = list(okr.key_results) if okr else []

        kr_indices = selection.selected(KEY_RESULTS)
        new_krs = add_key_results(
            self.state, project, [payload.key_results[i] for i in kr_indices], report=report
        )
        created = dict(zip(kr_indices, new_krs))

        tasks = []
        for index in selection.selected(TASKS):
            suggestion = payload.tasks[index]
            tasks.append(
                Task(
                    id=generate_id("task"),
                    project_id=self.project_id,
                    content=suggestion.content,
                    date=suggestion.date,
                    kr_id=resolve_kr_id(selection.kr_mapping.get(index), suggestion.kr_ref, existing, created),
                )
            )
        self.state.create_tasks(tasks)
        report.tasks = tasks
        report.project = self.state.get_project(self.project_id)
        return report

    def after_commit(self, report: CommitReport) -> None:
        """Confirm what was added and go back to chatting."""

        parts = []
        if report.tasks:
            linked = sum(1 for task in report.tasks if task.kr_id)
            text = f"已添加 {len(report.tasks)} 个任务到任务列表"
            if linked:
                text += f"，其中 {linked} 个已关联到KR"
            parts.append(text)
        if report.new_key_results:
            parts.append(f"已添加 {len(report.new_key_results)} 个KR到OKR中")
        self._append("assistant", "；".join(parts) + "。" if parts else "这次没有添加任何内容。")

        self.payload = None
        self.selection = Selection()
        self.phase = Phase.COLLECTING


WORKFLOW_TYPES = {
    ProjectIntakeWorkflow.kind: ProjectIntakeWorkflow,
    DailyReportWorkflow.kind: DailyReportWorkflow,
    TaskFollowUpWorkflow.kind: TaskFollowUpWorkflow,
    ProjectChatWorkflow.kind: ProjectChatWorkflow,
}
