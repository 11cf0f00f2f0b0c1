"""Tests for the store client, row mapper and data service."""

from __future__ import annotations

from datetime import date

import httpx
import pytest
from postgrest.exceptions import APIError

from conftest import FakeSupabase
from src.sales_advisor import mapper
from src.sales_advisor.data_service import DataService
from src.sales_advisor.schemas import OKR, KeyResult, Task
from src.sales_advisor.state import AppState
from src.sales_advisor.store_client import StoreClient, StoreError

URL = "https://demo.supabase.co/"
KEY = "anon-key"

PROJECT_ROW = {
    "id": "p1",
    "name": "Alpha Tech 采购案",
    "client_name": "Alpha Tech",
    "client_type": "终端客户",
    "stage": "商务谈判",
    "color": "#EF4444",
    "updated_at": "2024-06-01T08:00:00+00:00",
    "description": "",
    "budget": "50万",
    "decision_maker": None,
}


def _down(message: str = "down") -> APIError:
    return APIError({"message": message, "code": "500"})


def _client(*responses) -> tuple[StoreClient, FakeSupabase]:
    fake = FakeSupabase(list(responses))
    return StoreClient(URL, KEY, client=fake), fake


def test_unconfigured_client():
    client = StoreClient(None, "")
    assert not client.configured
    with pytest.raises(EnvironmentError):
        client.select("projects")


def test_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SUPABASE_URL", URL)
    monkeypatch.setenv("SUPABASE_ANON_KEY", KEY)
    assert StoreClient.from_env().configured

    monkeypatch.delenv("SUPABASE_ANON_KEY")
    assert not StoreClient.from_env().configured


def test_unconfigured_service_degrades(project, task):
    service = DataService(StoreClient(None, None))

    assert service.create_project(project) is project
    assert service.create_task(task) is task
    assert service.update_task(task) is True
    assert service.delete_project("p1") is True
    assert service.fetch_projects() == []
    assert service.fetch_okrs() == []


def test_select_query_shape():
    client, fake = _client([{"id": "t1"}])

    rows = client.select("tasks", filters={"project_id": "p1"}, order="date", descending=True)

    assert rows == [{"id": "t1"}]
    assert fake.calls[0] == {
        "table": "tasks",
        "action": "select",
        "payload": "*",
        "filters": {"project_id": "p1"},
        "order": ("date", True),
    }


def test_upsert_uses_upsert_query():
    client, fake = _client([{"id": "o1"}])
    assert client.upsert("okrs", {"id": "o1"}) == [{"id": "o1"}]
    assert fake.calls[0]["action"] == "upsert"


def test_api_error_raises():
    client, _ = _client(_down())
    with pytest.raises(StoreError, match="down"):
        client.select("projects")


def test_connection_error_raises():
    client, _ = _client(httpx.ConnectError("refused"))
    with pytest.raises(StoreError):
        client.insert("tasks", {"id": "t1"})


def test_unfiltered_writes_refused():
    client, fake = _client()
    with pytest.raises(ValueError):
        client.update("tasks", {"content": "x"}, {})
    with pytest.raises(ValueError):
        client.delete("tasks", {})
    assert fake.calls == []


def test_fetch_projects_merges_history_oldest_first():
    client, _ = _client(
        [PROJECT_ROW],
        [
            {"id": "e2", "date": "2024-06-02", "type": "report", "content": "今日汇报", "details": "好"},
            {"id": "e1", "date": "2024-06-01", "type": "stage_change", "content": "阶段推进", "details": ""},
        ],
    )

    projects = DataService(client).fetch_projects()

    assert len(projects) == 1
    project = projects[0]
    assert project.description is None
    assert project.budget == "50万"
    assert [e.id for e in project.progress_history] == ["e1", "e2"]
    assert project.progress_history[0].details is None


def test_fetch_okrs_groups_key_results():
    client, _ = _client(
        [{"id": "o1", "project_id": "p1", "objective": "拿下"}],
        [
            {"id": "kr1", "okr_id": "o1", "content": "拜访", "progress": 20},
            {"id": "kr2", "okr_id": "o1", "content": "报价", "progress": None},
            {"id": "kr3", "okr_id": "other", "content": "无关", "progress": 0},
        ],
    )

    okrs = DataService(client).fetch_okrs()

    assert [kr.id for kr in okrs[0].key_results] == ["kr1", "kr2"]
    assert okrs[0].key_results[1].progress == 0


def test_upsert_okr_replaces_key_result_rows():
    client, fake = _client()
    okr = OKR(id="o1", project_id="p1", objective="拿下", key_results=[KeyResult(id="kr1", content="拜访")])

    assert DataService(client).upsert_okr(okr) is True

    actions = [(c["action"], c["table"]) for c in fake.calls]
    assert actions == [("upsert", "okrs"), ("delete", "key_results"), ("insert", "key_results")]
    assert fake.calls[1]["filters"] == {"okr_id": "o1"}
    assert fake.calls[2]["payload"] == [{"id": "kr1", "okr_id": "o1", "content": "拜访", "progress": 0}]


def test_configured_failures_are_reported(task):
    client, _ = _client(*[_down("unavailable") for _ in range(4)])
    service = DataService(client)

    assert service.fetch_tasks() == []
    assert service.create_task(task) is None
    assert service.update_task(task) is False
    assert service.delete_task(task.id) is False


def test_state_keeps_change_when_persistence_fails(project):
    client, _ = _client(_down())
    state = AppState(DataService(client))
    state.replace_all([project], [], [])

    result = state.create_task(Task(id="t9", project_id="p1", content="回访", date=date(2024, 6, 3)))

    assert not result.persisted
    assert state.get_task("t9").content == "回访"


def test_task_row_round_trip():
    task = Task(id="t1", project_id=None, content="整理名片", date=date(2024, 6, 3), kr_id="")
    row = mapper.task_to_row(task)

    assert row["project_id"] is None
    assert row["kr_id"] is None
    assert row["date"] == "2024-06-03"
    assert mapper.row_to_task({**row, "project_id": ""}) == task.model_copy(update={"kr_id": None})
