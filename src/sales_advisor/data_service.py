"""Entity-level persistence on top of :mod:`store_client`.

Every operation degrades gracefully. When the store is not configured reads
return an empty collection and writes echo their input, so the rest of the
application behaves the same with or without persistence. When a configured
store fails, the failure is logged and reported through the return value.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import ValidationError

from . import mapper
from .schemas import OKR, ProgressEntry, Project, Task
from .store_client import StoreClient, StoreError

logger = logging.getLogger(__name__)


class DataService:
    """CRUD per entity type, returning domain objects."""

    def __init__(self, client: StoreClient) -> None:
        self.client = client

    @property
    def configured(self) -> bool:
        return self.client.configured

    # ------------------------------------------------------------------ projects

    def fetch_projects(self) -> List[Project]:
        if not self.configured:
            return []

        try:
            rows = self.client.select("projects", order="updated_at", descending=True)
            projects = []
            for row in rows:
                history = self.client.select(
                    "progress_entries",
                    filters={"project_id": row["id"]},
                    order="date",
                    descending=True,
                )
                # Kept oldest first in memory.
                projects.append(mapper.row_to_project(row, reversed(history)))
        except (StoreError, ValidationError) as exc:
            logger.error("Error fetching projects", exc_info=exc)
            return []

        logger.info("Fetched %s projects from store", len(projects))
        return projects

    def create_project(self, project: Project) -> Optional[Project]:
        if not self.configured:
            return project

        try:
            rows = self.client.insert("projects", mapper.project_to_row(project))
        except StoreError as exc:
            logger.error("Error creating project %s", project.id, exc_info=exc)
            return None

        if not rows:
            return project
        return mapper.row_to_project(rows[0])

    def update_project(self, project: Project) -> bool:
        if not self.configured:
            return True

        values = mapper.project_to_row(project)
        values.pop("id")
        try:
            self.client.update("projects", values, {"id": project.id})
        except StoreError as exc:
            logger.error("Error updating project %s", project.id, exc_info=exc)
            return False
        return True

    def delete_project(self, project_id: str) -> bool:
        """Delete a project; tasks, OKRs and history cascade at the store level."""

        if not self.configured:
            return True

        try:
            self.client.delete("projects", {"id": project_id})
        except StoreError as exc:
            logger.error("Error deleting project %s", project_id, exc_info=exc)
            return False
        return True

    # ---------------------------------------------------------- progress entries

    def add_progress_entry(self, project_id: str, entry: ProgressEntry) -> bool:
        if not self.configured:
            return True

        try:
            self.client.insert("progress_entries", mapper.progress_to_row(project_id, entry))
        except StoreError as exc:
            logger.error("Error adding progress entry to project %s", project_id, exc_info=exc)
            return False
        return True

    # --------------------------------------------------------------------- tasks

    def fetch_tasks(self) -> List[Task]:
        if not self.configured:
            return []

        try:
            rows = self.client.select("tasks", order="date")
            return [mapper.row_to_task(row) for row in rows]
        except (StoreError, ValidationError) as exc:
            logger.error("Error fetching tasks", exc_info=exc)
            return []

    def create_task(self, task: Task) -> Optional[Task]:
        if not self.configured:
            return task

        try:
            rows = self.client.insert("tasks", mapper.task_to_row(task))
        except StoreError as exc:
            logger.error("Error creating task %s", task.id, exc_info=exc)
            return None

        if not rows:
            return task
        return mapper.row_to_task(rows[0])

    def update_task(self, task: Task) -> bool:
        if not self.configured:
            return True

        values = mapper.task_to_row(task)
        values.pop("id")
        values.pop("project_id")
        try:
            self.client.update("tasks", values, {"id": task.id})
        except StoreError as exc:
            logger.error("Error updating task %s", task.id, exc_info=exc)
            return False
        return True

    def delete_task(self, task_id: str) -> bool:
        if not self.configured:
            return True

        try:
            self.client.delete("tasks", {"id": task_id})
        except StoreError as exc:
            logger.error("Error deleting task %s", task_id, exc_info=exc)
            return False
        return True

    # ---------------------------------------------------------------------- OKRs

    def fetch_okrs(self) -> List[OKR]:
        if not self.configured:
            return []

        try:
            okr_rows = self.client.select("okrs")
            kr_rows = self.client.select("key_results")
        except StoreError as exc:
            logger.error("Error fetching OKRs", exc_info=exc)
            return []

        grouped: Dict[str, list] = defaultdict(list)
        for kr in kr_rows:
            grouped[kr.get("okr_id")].append(kr)

        try:
            return [mapper.row_to_okr(row, grouped.get(row["id"], [])) for row in okr_rows]
        except ValidationError as exc:
            logger.error("Error mapping OKRs", exc_info=exc)
            return []

    def upsert_okr(self, okr: OKR) -> bool:
        """Write the OKR row and replace its key result rows."""

        if not self.configured:
            return True

        now = datetime.now(timezone.utc).isoformat()
        try:
            self.client.upsert("okrs", mapper.okr_to_row(okr, now))
            self.client.delete("key_results", {"okr_id": okr.id})
            if okr.key_results:
                self.client.insert("key_results", mapper.key_results_to_rows(okr))
        except StoreError as exc:
            logger.error("Error upserting OKR %s", okr.id, exc_info=exc)
            return False
        return True

    def delete_okr(self, okr_id: str) -> bool:
        if not self.configured:
            return True

        try:
            self.client.delete("okrs", {"id": okr_id})
        except StoreError as exc:
            logger.error("Error deleting OKR %s", okr_id, exc_info=exc)
            return False
        return True
