"""Translation between store rows (snake_case columns) and domain entities."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .schemas import OKR, KeyResult, ProgressEntry, Project, Task

Row = Dict[str, Any]


def _optional(value: Any) -> Optional[Any]:
    # Empty strings from the store are treated the same as NULL.
    return value or None


def row_to_project(row: Row, history: Iterable[Row] = ()) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        client_name=row["client_name"],
        client_type=row["client_type"],
        stage=row["stage"],
        color=row["color"],
        updated_at=row["updated_at"],
        description=_optional(row.get("description")),
        budget=_optional(row.get("budget")),
        decision_maker=_optional(row.get("decision_maker")),
        competitors=_optional(row.get("competitors")),
        next_step=_optional(row.get("next_step")),
        progress_history=[row_to_progress(entry) for entry in history],
    )


def project_to_row(project: Project) -> Row:
    """Columns written for a project; the progress history lives in its own table."""
    return {
        "id": project.id,
        "name": project.name,
        "client_name": project.client_name,
        "client_type": project.client_type.value,
        "stage": project.stage.value,
        "color": project.color,
        "updated_at": project.updated_at.isoformat(),
        "description": project.description or None,
        "budget": project.budget or None,
        "decision_maker": project.decision_maker or None,
        "competitors": project.competitors or None,
        "next_step": project.next_step or None,
    }


def row_to_task(row: Row) -> Task:
    return Task(
        id=row["id"],
        project_id=_optional(row.get("project_id")),
        content=row["content"],
        date=row["date"],
        is_completed=bool(row.get("is_completed")),
        kr_id=_optional(row.get("kr_id")),
    )


def task_to_row(task: Task) -> Row:
    return {
        "id": task.id,
        "project_id": task.project_id or None,
        "content": task.content,
        "date": task.date.isoformat(),
        "is_completed": task.is_completed,
        "kr_id": task.kr_id or None,
    }


def row_to_okr(row: Row, key_result_rows: Iterable[Row]) -> OKR:
    return OKR(
        id=row["id"],
        project_id=row["project_id"],
        objective=row["objective"],
        key_results=[
            KeyResult(id=kr["id"], content=kr["content"], progress=kr.get("progress"))
            for kr in key_result_rows
        ],
    )


def okr_to_row(okr: OKR, updated_at: str) -> Row:
    return {
        "id": okr.id,
        "project_id": okr.project_id,
        "objective": okr.objective,
        "updated_at": updated_at,
    }


def key_results_to_rows(okr: OKR) -> List[Row]:
    return [
        {"id": kr.id, "okr_id": okr.id, "content": kr.content, "progress": kr.progress}
        for kr in okr.key_results
    ]


def row_to_progress(row: Row) -> ProgressEntry:
    return ProgressEntry(
        id=row["id"],
        date=row["date"],
        type=row["type"],
        content=row["content"],
        details=_optional(row.get("details")),
    )


def progress_to_row(project_id: str, entry: ProgressEntry) -> Row:
    return {
        "id": entry.id,
        "project_id": project_id,
        "date": entry.date.isoformat(),
        "type": entry.type.value,
        "content": entry.content,
        "details": entry.details or None,
    }
