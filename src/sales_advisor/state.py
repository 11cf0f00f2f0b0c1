"""In-memory application state: the single source of truth for a session.

Every mutation is applied to memory first and persisted afterwards. A failed
persistence call is logged and never rolled back, so the in-memory copy stays
authoritative. There is no conflict detection and no retry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from threading import Lock
from typing import Dict, Generic, Iterable, List, Optional, TypeVar

from .data_service import DataService
from .sample_data import sample_collections
from .schemas import (
    OKR,
    ProgressEntry,
    ProgressType,
    Project,
    ProjectStage,
    Task,
    generate_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KR_LABEL_LENGTH = 20
_CLOSED_STAGES = {ProjectStage.SIGNED, ProjectStage.IMPLEMENTATION}
_UNSET = object()


class NotFoundError(LookupError):
    """Raised when an entity id is unknown to the state container."""


@dataclass
class MutationResult(Generic[T]):
    """Outcome of a state mutation.

    ``entity`` is the entity after the change (``None`` for deletions),
    ``progress`` lists the history entries appended as a side effect and
    ``persisted`` tells whether every store call succeeded.
    """

    entity: Optional[T]
    progress: List[ProgressEntry] = field(default_factory=list)
    persisted: bool = True


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _kr_label(content: str) -> str:
    if len(content) > _KR_LABEL_LENGTH:
        return content[:_KR_LABEL_LENGTH] + "..."
    return content


class AppState:
    """Holds projects, tasks and OKRs and exposes the mutation API."""

    def __init__(self, data: DataService) -> None:
        self._data = data
        self._lock = Lock()
        self._projects: Dict[str, Project] = {}
        self._tasks: Dict[str, Task] = {}
        # A list rather than a dict keyed by project: lookups by project are
        # "first match wins" and duplicates are tolerated.
        self._okrs: List[OKR] = []

    @property
    def store_configured(self) -> bool:
        return self._data.configured

    @classmethod
    def load(cls, data: DataService) -> "AppState":
        state = cls(data)
        state.reload()
        return state

    def reload(self) -> None:
        """Load every collection from the store, or sample data when it is not configured."""

        if self._data.configured:
            projects = self._data.fetch_projects()
            tasks = self._data.fetch_tasks()
            okrs = self._data.fetch_okrs()
        else:
            logger.warning("Store not configured; using local sample data")
            projects, tasks, okrs = sample_collections()
        self.replace_all(projects, tasks, okrs)

    def replace_all(self, projects: Iterable[Project], tasks: Iterable[Task], okrs: Iterable[OKR]) -> None:
        """Swap the in-memory collections without touching the store."""

        with self._lock:
            self._projects = {project.id: project for project in projects}
            self._tasks = {task.id: task for task in tasks}
            self._okrs = list(okrs)
            counts = (len(self._projects), len(self._tasks), len(self._okrs))
        logger.info("Loaded state (projects=%s, tasks=%s, okrs=%s)", *counts)

    # ------------------------------------------------------------------ reads

    def projects(self) -> List[Project]:
        with self._lock:
            return list(self._projects.values())

    def tasks(self) -> List[Task]:
        with self._lock:
            return list(self._tasks.values())

    def okrs(self) -> List[OKR]:
        with self._lock:
            return list(self._okrs)

    def get_project(self, project_id: str) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found.")
        return project

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found.")
        return task

    def okr_for_project(self, project_id: str) -> Optional[OKR]:
        """Return the first OKR attached to ``project_id``."""
        with self._lock:
            return next((okr for okr in self._okrs if okr.project_id == project_id), None)

    def tasks_for_project(self, project_id: str) -> List[Task]:
        with self._lock:
            return [task for task in self._tasks.values() if task.project_id == project_id]

    def tasks_on(self, day: date) -> List[Task]:
        with self._lock:
            return [task for task in self._tasks.values() if task.date == day]

    def stats(self) -> Dict[str, int]:
        """Summary counters for the dashboard."""

        with self._lock:
            projects = list(self._projects.values())
            tasks = list(self._tasks.values())
            okrs = list(self._okrs)

        closed = sum(1 for project in projects if project.stage in _CLOSED_STAGES)
        completed_tasks = sum(1 for task in tasks if task.is_completed)

        averages = []
        for okr in okrs:
            if okr.key_results:
                averages.append(sum(kr.progress for kr in okr.key_results) / len(okr.key_results))
            else:
                averages.append(0)
        avg_progress = round(sum(averages) / len(averages)) if averages else 0

        return {
            "projectCount": len(projects),
            "closedProjects": closed,
            "ongoingProjects": len(projects) - closed,
            "completedTasks": completed_tasks,
            "pendingTasks": len(tasks) - completed_tasks,
            "okrCount": len(okrs),
            "averageOkrProgress": avg_progress,
        }

    # ---------------------------------------------------------------- helpers

    def _append_progress_locked(
        self,
        project_id: str,
        entry_type: ProgressType,
        content: str,
        details: Optional[str] = None,
    ) -> Optional[ProgressEntry]:
        project = self._projects.get(project_id)
        if project is None:
            logger.debug("Skipping progress entry for unknown project %s", project_id)
            return None

        entry = ProgressEntry(
            id=generate_id("progress"),
            date=date.today(),
            type=entry_type,
            content=content,
            details=details,
        )
        self._projects[project_id] = project.model_copy(
            update={"progress_history": [*project.progress_history, entry], "updated_at": _now()}
        )
        return entry

    def _persist_progress(self, project_id: str, entries: Iterable[ProgressEntry]) -> bool:
        ok = True
        for entry in entries:
            ok = self._data.add_progress_entry(project_id, entry) and ok
        return ok

    @staticmethod
    def _check(result: object, operation: str) -> bool:
        if result is None or result is False:
            logger.warning("Persistence failed for %s; keeping in-memory state", operation)
            return False
        return True

    # --------------------------------------------------------------- projects

    def create_project(self, project: Project) -> MutationResult[Project]:
        with self._lock:
            self._projects[project.id] = project
        logger.info("Created project %s (%s)", project.id, project.name)
        persisted = self._check(self._data.create_project(project), "create_project")
        return MutationResult(project, persisted=persisted)

    def update_project(self, project: Project) -> MutationResult[Project]:
        """Replace editable project fields and refresh ``updated_at``.

        The progress history is append-only, so the stored history is kept
        regardless of what ``project`` carries. A changed stage is recorded
        the same way :meth:`update_stage` records it.
        """

        entries: List[ProgressEntry] = []
        with self._lock:
            current = self._projects.get(project.id)
            if current is None:
                raise NotFoundError(f"Project {project.id} not found.")
            if project.stage != current.stage:
                entries.append(
                    self._append_progress_locked(
                        project.id,
                        ProgressType.STAGE_CHANGE,
                        f"阶段推进：{current.stage.value} → {project.stage.value}",
                    )
                )
            updated = project.model_copy(
                update={"updated_at": _now(), "progress_history": self._projects[project.id].progress_history}
            )
            self._projects[project.id] = updated
        logger.info("Updated project %s", project.id)
        persisted = self._persist_progress(project.id, entries)
        persisted = self._check(self._data.update_project(updated), "update_project") and persisted
        return MutationResult(updated, entries, persisted)

    def delete_project(self, project_id: str) -> MutationResult[Project]:
        """Remove a project together with its tasks and OKRs."""

        with self._lock:
            if self._projects.pop(project_id, None) is None:
                raise NotFoundError(f"Project {project_id} not found.")
            self._tasks = {tid: t for tid, t in self._tasks.items() if t.project_id != project_id}
            self._okrs = [okr for okr in self._okrs if okr.project_id != project_id]
        logger.info("Deleted project %s with its tasks and OKRs", project_id)
        persisted = self._check(self._data.delete_project(project_id), "delete_project")
        return MutationResult(None, persisted=persisted)

    def update_stage(self, project_id: str, stage: ProjectStage) -> MutationResult[Project]:
        """Move a project to ``stage``; a real transition is recorded in its history."""

        entries: List[ProgressEntry] = []
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found.")
            if project.stage != stage:
                entry = self._append_progress_locked(
                    project_id,
                    ProgressType.STAGE_CHANGE,
                    f"阶段推进：{project.stage.value} → {stage.value}",
                )
                entries.append(entry)
            updated = self._projects[project_id].model_copy(update={"stage": stage, "updated_at": _now()})
            self._projects[project_id] = updated

        logger.info("Project %s stage set to %s", project_id, stage.value)
        persisted = self._persist_progress(project_id, entries)
        persisted = self._check(self._data.update_project(updated), "update_stage") and persisted
        return MutationResult(updated, entries, persisted)

    def add_progress(
        self,
        project_id: str,
        entry_type: ProgressType,
        content: str,
        details: Optional[str] = None,
    ) -> MutationResult[ProgressEntry]:
        if not content or not content.strip():
            raise ValueError("Progress content must be a non-empty string.")

        with self._lock:
            if project_id not in self._projects:
                raise NotFoundError(f"Project {project_id} not found.")
            entry = self._append_progress_locked(project_id, entry_type, content.strip(), details)
        persisted = self._persist_progress(project_id, [entry])
        return MutationResult(entry, [entry], persisted)

    # ------------------------------------------------------------------ tasks

    def create_task(self, task: Task) -> MutationResult[Task]:
        with self._lock:
            self._tasks[task.id] = task
        logger.info("Created task %s for project %s", task.id, task.project_id)
        persisted = self._check(self._data.create_task(task), "create_task")
        return MutationResult(task, persisted=persisted)

    def create_tasks(self, tasks: Iterable[Task]) -> List[MutationResult[Task]]:
        return [self.create_task(task) for task in tasks]

    def update_task(
        self,
        task_id: str,
        content: Optional[str] = None,
        day: Optional[date] = None,
        kr_id: object = _UNSET,
    ) -> MutationResult[Task]:
        """Edit a task's content, date or key result link.

        ``kr_id`` left unset keeps the current link; ``None`` clears it.
        """

        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found.")
            changes: Dict[str, object] = {}
            if content is not None:
                changes["content"] = content
            if day is not None:
                changes["date"] = day
            if kr_id is not _UNSET:
                changes["kr_id"] = kr_id or None
            updated = task.model_copy(update=changes)
            self._tasks[task_id] = updated
        persisted = self._check(self._data.update_task(updated), "update_task")
        return MutationResult(updated, persisted=persisted)

    def toggle_task(self, task_id: str) -> MutationResult[Task]:
        """Flip a task's completion flag.

        Completing a task that belongs to a project appends one
        ``task_completed`` entry; reopening it appends nothing.
        """

        entries: List[ProgressEntry] = []
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found.")
            if not task.is_completed and task.project_id:
                entry = self._append_progress_locked(
                    task.project_id, ProgressType.TASK_COMPLETED, f"完成任务：{task.content}"
                )
                if entry is not None:
                    entries.append(entry)
            updated = task.model_copy(update={"is_completed": not task.is_completed})
            self._tasks[task_id] = updated

        logger.info("Task %s completed=%s", task_id, updated.is_completed)
        persisted = self._persist_progress(task.project_id, entries) if entries else True
        persisted = self._check(self._data.update_task(updated), "toggle_task") and persisted
        return MutationResult(updated, entries, persisted)

    def complete_task(self, task_id: str) -> MutationResult[Task]:
        """Mark a task done; an already completed task is left untouched."""
        task = self.get_task(task_id)
        if task.is_completed:
            return MutationResult(task)
        return self.toggle_task(task_id)

    def delete_task(self, task_id: str) -> MutationResult[Task]:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                raise NotFoundError(f"Task {task_id} not found.")
        persisted = self._check(self._data.delete_task(task_id), "delete_task")
        return MutationResult(None, persisted=persisted)

    def _clear_kr_links_locked(self, kr_ids: Iterable[str]) -> List[Task]:
        stale = set(kr_ids)
        if not stale:
            return []
        cleared = []
        for task_id, task in list(self._tasks.items()):
            if task.kr_id in stale:
                updated = task.model_copy(update={"kr_id": None})
                self._tasks[task_id] = updated
                cleared.append(updated)
        return cleared

    # ------------------------------------------------------------------- OKRs

    def upsert_okr(self, okr: OKR) -> MutationResult[OKR]:
        """Insert or replace the OKR of ``okr.project_id``.

        Against a prior OKR, each key result whose progress changed appends
        one ``kr_progress`` entry and any newly appearing key results append a
        single summary entry. Without a prior OKR one entry records the new
        objective. Tasks linked to key results that disappear lose their link.
        """

        entries: List[ProgressEntry] = []
        cleared: List[Task] = []
        project_id = okr.project_id
        with self._lock:
            index = next((i for i, o in enumerate(self._okrs) if o.project_id == project_id), None)
            if index is not None:
                previous = self._okrs[index]
                old_by_id = {kr.id: kr for kr in previous.key_results}
                added = []
                for kr in okr.key_results:
                    old = old_by_id.get(kr.id)
                    if old is None:
                        added.append(kr)
                    elif old.progress != kr.progress:
                        entry = self._append_progress_locked(
                            project_id,
                            ProgressType.KR_PROGRESS,
                            f"KR进度更新：{_kr_label(kr.content)}",
                            f"{old.progress}% → {kr.progress}%",
                        )
                        if entry is not None:
                            entries.append(entry)
                if added:
                    entry = self._append_progress_locked(
                        project_id,
                        ProgressType.KR_PROGRESS,
                        f"新增{len(added)}个KR",
                        "; ".join(kr.content for kr in added),
                    )
                    if entry is not None:
                        entries.append(entry)
                removed = set(old_by_id) - {kr.id for kr in okr.key_results}
                cleared = self._clear_kr_links_locked(removed)
                self._okrs[index] = okr
            else:
                entry = self._append_progress_locked(
                    project_id,
                    ProgressType.KR_PROGRESS,
                    f"设定OKR：{okr.objective}",
                    f"包含{len(okr.key_results)}个KR",
                )
                if entry is not None:
                    entries.append(entry)
                self._okrs.append(okr)

        logger.info("Upserted OKR %s for project %s (%s history entries)", okr.id, project_id, len(entries))
        persisted = self._persist_progress(project_id, entries)
        persisted = self._check(self._data.upsert_okr(okr), "upsert_okr") and persisted
        for task in cleared:
            logger.info("Cleared stale key result link on task %s", task.id)
            persisted = self._check(self._data.update_task(task), "update_task") and persisted
        return MutationResult(okr, entries, persisted)

    def delete_okr(self, okr_id: str) -> MutationResult[OKR]:
        with self._lock:
            okr = next((o for o in self._okrs if o.id == okr_id), None)
            if okr is None:
                raise NotFoundError(f"OKR {okr_id} not found.")
            self._okrs = [o for o in self._okrs if o.id != okr_id]
            cleared = self._clear_kr_links_locked(kr.id for kr in okr.key_results)

        persisted = self._check(self._data.delete_okr(okr_id), "delete_okr")
        for task in cleared:
            persisted = self._check(self._data.update_task(task), "update_task") and persisted
        return MutationResult(None, persisted=persisted)
