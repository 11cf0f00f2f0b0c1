"""Demo data loaded when no store is configured."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Tuple

from .schemas import OKR, ClientType, Project, ProjectStage, Task


def sample_collections() -> Tuple[List[Project], List[Task], List[OKR]]:
    now = datetime.now(timezone.utc)
    projects = [
        Project(
            id="1",
            name="Alpha Tech 采购案",
            client_name="Alpha Tech",
            client_type=ClientType.END_CUSTOMER,
            stage=ProjectStage.NEGOTIATION,
            color="#EF4444",
            updated_at=now,
        ),
        Project(
            id="2",
            name="Beta 渠道拓展",
            client_name="Beta Inc",
            client_type=ClientType.RESELLER,
            stage=ProjectStage.FIRST_CONTACT,
            color="#3B82F6",
            updated_at=now,
        ),
    ]
    tasks = [Task(id="t1", project_id="1", content="发送最终报价单", date=date.today())]
    return projects, tasks, []
