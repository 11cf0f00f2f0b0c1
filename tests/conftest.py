"""Shared test fixtures for the sales advisor."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from types import SimpleNamespace
from typing import Any, List

import pytest

from src.sales_advisor import llm_client, session_store
from src.sales_advisor.data_service import DataService
from src.sales_advisor.schemas import ClientType, Project, ProjectStage, Task
from src.sales_advisor.state import AppState
from src.sales_advisor.store_client import StoreClient


class ScriptedModel:
    """Stands in for the Gemini client; replies are consumed in order."""

    def __init__(self) -> None:
        self.replies: List[Any] = []
        self.json_replies: List[Any] = []
        self.calls: List[tuple] = []

    def _next(self, queue: List[Any]) -> Any:
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def chat_complete(self, system_prompt: str, messages: List[dict]) -> str:
        self.calls.append((system_prompt, [dict(m) for m in messages]))
        return self._next(self.replies)

    def generate_json(self, prompt: str, response_schema: Any, system_prompt: str | None = None) -> dict:
        self.calls.append((prompt, response_schema))
        return self._next(self.json_replies)


class FakeQuery:
    """Builder returned by ``FakeSupabase.table``; records the chained calls."""

    def __init__(self, owner: "FakeSupabase", table: str) -> None:
        self.owner = owner
        self.call: dict = {"table": table, "action": None, "payload": None, "filters": {}, "order": None}

    def _action(self, action: str, payload: Any = None) -> "FakeQuery":
        self.call["action"] = action
        self.call["payload"] = payload
        return self

    def select(self, columns: str) -> "FakeQuery":
        return self._action("select", columns)

    def insert(self, rows: Any) -> "FakeQuery":
        return self._action("insert", rows)

    def upsert(self, rows: Any) -> "FakeQuery":
        return self._action("upsert", rows)

    def update(self, values: Any) -> "FakeQuery":
        return self._action("update", values)

    def delete(self) -> "FakeQuery":
        return self._action("delete")

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.call["filters"][column] = value
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self.call["order"] = (column, desc)
        return self

    def execute(self) -> SimpleNamespace:
        self.owner.calls.append(self.call)
        if not self.owner.responses:
            return SimpleNamespace(data=[])
        response = self.owner.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return SimpleNamespace(data=response)


class FakeSupabase:
    """Stands in for the Supabase client; query results come from a queue."""

    def __init__(self, responses: List[Any] | None = None) -> None:
        self.responses = list(responses or [])
        self.calls: List[dict] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


def reply_with_block(text: str, marker: str, payload: dict) -> str:
    return f"{text}\n\n{marker}\n```json\n{json.dumps(payload, ensure_ascii=False)}\n```"


@pytest.fixture(autouse=True)
def clean_sessions():
    session_store.reset()
    yield
    session_store.reset()


@pytest.fixture
def model(monkeypatch: pytest.MonkeyPatch) -> ScriptedModel:
    scripted = ScriptedModel()
    monkeypatch.setattr(llm_client, "chat_complete", scripted.chat_complete)
    monkeypatch.setattr(llm_client, "generate_json", scripted.generate_json)
    return scripted


@pytest.fixture
def project() -> Project:
    return Project(
        id="p1",
        name="Alpha Tech 采购案",
        client_name="Alpha Tech",
        client_type=ClientType.END_CUSTOMER,
        stage=ProjectStage.NEGOTIATION,
        color="#EF4444",
        updated_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def task() -> Task:
    return Task(id="t1", project_id="p1", content="发送最终报价单", date=date.today())


@pytest.fixture
def state(project: Project, task: Task) -> AppState:
    app_state = AppState(DataService(StoreClient(None, None)))
    app_state.replace_all([project], [task], [])
    return app_state


@pytest.fixture
def make_reply():
    return reply_with_block
