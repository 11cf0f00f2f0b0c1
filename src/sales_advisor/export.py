"""Backup exports for the sales advisor."""
from __future__ import annotations

import csv
import json
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Sequence

import pandas as pd

from .schemas import OKR, ExportData, Project, Task

BOM = "\ufeff"

PROJECT_SECTION = "# 项目数据"
TASK_SECTION = "# 任务数据"
OKR_SECTION = "# OKR数据"

PROJECT_HEADERS = ["ID", "项目名称", "客户名称", "客户类型", "阶段", "预算", "决策人", "竞品", "下一步", "更新时间"]
TASK_HEADERS = ["ID", "项目ID", "内容", "日期", "是否完成", "KR ID"]
OKR_HEADERS = ["OKR ID", "项目ID", "目标", "KR ID", "KR内容", "进度"]


def build_export(
    projects: Iterable[Project],
    tasks: Iterable[Task],
    okrs: Iterable[OKR],
    exported_at: Optional[datetime] = None,
) -> ExportData:
    return ExportData(
        exported_at=exported_at or datetime.now(timezone.utc),
        projects=list(projects),
        tasks=list(tasks),
        okrs=list(okrs),
    )


def export_json(data: ExportData) -> str:
    return json.dumps(data.model_dump(mode="json", by_alias=True), ensure_ascii=False, indent=2)


def _section(title: str, headers: Sequence[str], rows: List[list]) -> str:
    lines = [title, ",".join(headers)]
    if rows:
        body = pd.DataFrame(rows, columns=list(headers)).to_csv(
            index=False, header=False, quoting=csv.QUOTE_ALL, lineterminator="\n"
        )
        lines.append(body.rstrip("\n"))
    return "\n".join(lines)


def export_csv(data: ExportData) -> str:
    """Render one section per entity type, prefixed with a UTF-8 BOM for spreadsheets."""

    project_rows = [
        [
            p.id,
            p.name,
            p.client_name,
            p.client_type.value,
            p.stage.value,
            p.budget or "",
            p.decision_maker or "",
            p.competitors or "",
            p.next_step or "",
            p.updated_at.isoformat(),
        ]
        for p in data.projects
    ]
    task_rows = [
        [t.id, t.project_id or "", t.content, t.date.isoformat(), "是" if t.is_completed else "否", t.kr_id or ""]
        for t in data.tasks
    ]
    okr_rows = [
        [o.id, o.project_id, o.objective, kr.id, kr.content, kr.progress]
        for o in data.okrs
        for kr in o.key_results
    ]

    sections = [
        _section(PROJECT_SECTION, PROJECT_HEADERS, project_rows),
        _section(TASK_SECTION, TASK_HEADERS, task_rows),
        _section(OKR_SECTION, OKR_HEADERS, okr_rows),
    ]
    return BOM + "\n\n".join(sections)


def backup_filename(extension: str, day: Optional[date] = None) -> str:
    return f"sales-assistant-backup-{(day or date.today()).isoformat()}.{extension}"
