"""Non-conversational model calls: report analysis, OKR generation, insight, transcription.

Structured calls never raise; any failure returns a fixed fallback payload so
callers always have something to show.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from . import llm_client, prompts, rules
from .schemas import (
    OKR,
    GeneratedOKR,
    KeyResult,
    Project,
    ProjectInsightResult,
    ReportAnalysisResult,
    SuggestedOKR,
    SuggestedTask,
    Task,
    generate_id,
)
from .state import AppState
from .workflows import KEY_RESULTS, OKR_GROUP, TASKS, CommitReport, Selection, add_key_results

logger = logging.getLogger(__name__)

FALLBACK_OKR = GeneratedOKR(
    objective="推进项目至下一阶段",
    key_results=["完成关键决策人拜访", "确定预算范围", "提交初步方案"],
)
FALLBACK_INSIGHT_ANALYSIS = "分析服务暂时不可用，请稍后再试。"
FALLBACK_REPORT_ANALYSIS = "分析服务暂时不可用，但我建议你立刻复盘今天的沟通细节。"


class TranscriptionError(RuntimeError):
    """Raised when an audio clip cannot be transcribed."""


def _tasks_from(raw: Any, default_day: Optional[date] = None) -> List[SuggestedTask]:
    tasks = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict) or not rules.passes(item, [rules.require_task_content]):
            continue
        day = None
        try:
            day = date.fromisoformat(str(item.get("date", ""))[:10])
        except ValueError:
            day = default_day
        if day is None:
            continue
        tasks.append(SuggestedTask(content=item["content"].strip(), date=day))
    return tasks


def _strings(raw: Any) -> List[str]:
    return [item.strip() for item in raw if isinstance(item, str) and item.strip()] if isinstance(raw, list) else []


def analyze_daily_report(
    report_text: str,
    project_names: Sequence[str],
    include_okr: bool = False,
    today: Optional[date] = None,
) -> ReportAnalysisResult:
    """One-shot analysis of a written report; task dates default to tomorrow."""

    today = today or date.today()
    tomorrow = today + timedelta(days=1)
    schema = prompts.ReportAnalysisWithOKRSchema if include_okr else prompts.ReportAnalysisSchema

    try:
        raw = llm_client.generate_json(
            prompts.daily_report_analysis_prompt(report_text, project_names, include_okr, today),
            schema,
            prompts.get_system_prompt(),
        )
        okr_raw = raw.get("suggestedOKR")
        okr = None
        if include_okr and rules.passes(okr_raw, rules.okr_suggestion_rules()):
            okr = SuggestedOKR(objective=okr_raw["objective"].strip(), key_results=_strings(okr_raw["keyResults"]))
        return ReportAnalysisResult(
            analysis=str(raw.get("analysis") or ""),
            suggested_tasks=_tasks_from(raw.get("suggestedTasks"), tomorrow),
            suggested_okr=okr,
        )
    except (EnvironmentError, RuntimeError, ValueError, AttributeError, ValidationError) as exc:
        logger.error("Daily report analysis failed", exc_info=exc)
        return ReportAnalysisResult(
            analysis=FALLBACK_REPORT_ANALYSIS,
            suggested_tasks=[SuggestedTask(content="复盘今天的工作内容", date=tomorrow)],
        )


def generate_okr(project: Project, existing_okr: Optional[OKR], tasks: Sequence[Task]) -> GeneratedOKR:
    try:
        raw = llm_client.generate_json(
            prompts.okr_generation_prompt(project, existing_okr, tasks),
            prompts.OKRSuggestionSchema,
            prompts.get_system_prompt(),
        )
        if not rules.passes(raw, rules.okr_suggestion_rules()):
            raise ValueError(f"Invalid OKR response structure: {raw!r}")
        return GeneratedOKR(objective=raw["objective"].strip(), key_results=_strings(raw["keyResults"]))
    except (EnvironmentError, RuntimeError, ValueError, ValidationError) as exc:
        logger.error("OKR generation failed; using fallback", exc_info=exc)
        return FALLBACK_OKR.model_copy(deep=True)


def generate_project_insight(
    project: Project,
    tasks: Sequence[Task],
    okr: Optional[OKR],
    today: Optional[date] = None,
) -> ProjectInsightResult:
    today = today or date.today()
    try:
        raw = llm_client.generate_json(
            prompts.insight_prompt(project, tasks, okr, today),
            prompts.InsightSchema,
            prompts.get_system_prompt(),
        )
        return ProjectInsightResult(
            analysis=str(raw.get("analysis") or ""),
            risks=_strings(raw.get("risks")),
            suggested_tasks=_tasks_from(raw.get("suggestedTasks")),
            suggested_krs=_strings(raw.get("suggestedKRs")),
        )
    except (EnvironmentError, RuntimeError, ValueError, AttributeError, ValidationError) as exc:
        logger.error("Project insight failed; using fallback", exc_info=exc)
        return ProjectInsightResult(analysis=FALLBACK_INSIGHT_ANALYSIS)


def transcribe(data: bytes, mime_type: str = "audio/webm") -> str:
    try:
        return llm_client.transcribe_audio(data, mime_type)
    except (EnvironmentError, RuntimeError, ValueError) as exc:
        logger.error("Transcription error", exc_info=exc)
        raise TranscriptionError("语音转写失败，请重试。") from exc


# ---------------------------------------------------------------------------
# Reviewable suggestion sets
# ---------------------------------------------------------------------------


class SuggestionReview(ABC):
    """Generated suggestions awaiting the user's selection."""

    kind = ""

    def __init__(self, state: AppState, project_id: str, selection: Selection) -> None:
        self.state = state
        self.project_id = project_id
        self.selection = selection

    def select(self, group: str, key: Any, selected: bool = True) -> None:
        self.selection.set(group, key, selected)

    def map_task_to_kr(self, task_index: int, kr_id: Optional[str]) -> None:
        if task_index not in self.selection.available.get(TASKS, set()):
            raise KeyError(f"Unknown task index {task_index}")
        if kr_id:
            self.selection.kr_mapping[task_index] = kr_id
        else:
            self.selection.kr_mapping.pop(task_index, None)

    @abstractmethod
    def payload(self) -> Dict[str, Any]: ...

    @abstractmethod
    def apply(self) -> CommitReport: ...

    def snapshot(self) -> Dict[str, Any]:
        return {"kind": self.kind, "payload": self.payload(), "selection": self.selection.to_dict()}


class OKRSuggestionReview(SuggestionReview):
    """Generated key results offered for a project's OKR."""

    kind = "okr_suggestion"

    def __init__(self, state: AppState, project_id: str, generated: GeneratedOKR) -> None:
        selection = Selection({KEY_RESULTS: range(len(generated.key_results)), OKR_GROUP: ["objective"]})
        # Replacing the objective is opt-in.
        selection.set(OKR_GROUP, "objective", False)
        super().__init__(state, project_id, selection)
        self.generated = generated

    def payload(self) -> Dict[str, Any]:
        return self.generated.model_dump(mode="json", by_alias=True)

    def apply(self) -> CommitReport:
        project = self.state.get_project(self.project_id)
        okr = self.state.okr_for_project(self.project_id)
        contents = [self.generated.key_results[i] for i in self.selection.selected(KEY_RESULTS)]
        report = CommitReport()
        if okr is None:
            add_key_results(self.state, project, contents, self.generated.objective, report)
            return report

        new_krs = [KeyResult(id=generate_id("kr"), content=content) for content in contents]
        objective = okr.objective
        if self.selection.is_selected(OKR_GROUP, "objective"):
            objective = self.generated.objective
        updated = okr.model_copy(update={"objective": objective, "key_results": [*okr.key_results, *new_krs]})
        result = self.state.upsert_okr(updated)
        report.okr = result.entity
        report.new_key_results = new_krs
        report.progress = result.progress
        return report


def apply_generated_okr(state: AppState, project_id: str, generated: GeneratedOKR):
    """Create the OKR directly when the project has none, else return a review.

    Returns a ``(report, review)`` pair where exactly one side is set.
    """

    project = state.get_project(project_id)
    if state.okr_for_project(project_id) is None:
        report = CommitReport()
        add_key_results(state, project, generated.key_results, generated.objective, report)
        return report, None
    return None, OKRSuggestionReview(state, project_id, generated)


class InsightReview(SuggestionReview):
    """Tasks and key results suggested by a project insight."""

    kind = "project_insight"

    def __init__(self, state: AppState, project_id: str, insight: ProjectInsightResult) -> None:
        selection = Selection(
            {
                TASKS: range(len(insight.suggested_tasks)),
                KEY_RESULTS: range(len(insight.suggested_krs)),
            }
        )
        super().__init__(state, project_id, selection)
        self.insight = insight

    def payload(self) -> Dict[str, Any]:
        return self.insight.model_dump(mode="json", by_alias=True)

    def apply(self) -> CommitReport:
        """Create selected key results first, then selected tasks.

        Each task links to its manual choice, else the first new key result,
        else the first key result of the project's OKR, else nothing.
        """

        project = self.state.get_project(self.project_id)
        report = CommitReport()
        contents = [self.insight.suggested_krs[i] for i in self.selection.selected(KEY_RESULTS)]
        new_krs = add_key_results(self.state, project, contents, report=report)

        okr = self.state.okr_for_project(self.project_id)
        known_ids = {kr.id for kr in okr.key_results} if okr else set()
        if new_krs:
            fallback = new_krs[0].id
        elif okr and okr.key_results:
            fallback = okr.key_results[0].id
        else:
            fallback = None

        tasks = []
        for index in self.selection.selected(TASKS):
            suggestion = self.insight.suggested_tasks[index]
            manual = self.selection.kr_mapping.get(index)
            tasks.append(
                Task(
                    id=generate_id("task"),
                    project_id=self.project_id,
                    content=suggestion.content,
                    date=suggestion.date,
                    kr_id=manual if manual in known_ids else fallback,
                )
            )
        self.state.create_tasks(tasks)
        report.tasks = tasks
        return report
