"""Tests for the in-memory state container."""

from __future__ import annotations

from datetime import date

import pytest

from src.sales_advisor.data_service import DataService
from src.sales_advisor.schemas import OKR, KeyResult, ProgressType, ProjectStage, Task
from src.sales_advisor.state import AppState, NotFoundError
from src.sales_advisor.store_client import StoreClient


def _okr(*key_results: KeyResult, okr_id: str = "o1", objective: str = "拿下Alpha") -> OKR:
    return OKR(id=okr_id, project_id="p1", objective=objective, key_results=list(key_results))


def test_reload_without_store_uses_sample_data():
    state = AppState.load(DataService(StoreClient(None, None)))
    assert not state.store_configured
    assert len(state.projects()) == 2
    assert [t.id for t in state.tasks()] == ["t1"]
    assert state.okrs() == []


def test_toggle_completion_appends_one_entry(state: AppState):
    result = state.toggle_task("t1")

    assert result.entity.is_completed
    history = state.get_project("p1").progress_history
    assert len(history) == 1
    assert history[0].type == ProgressType.TASK_COMPLETED
    assert history[0].content == "完成任务：发送最终报价单"
    assert result.progress == history


def test_toggle_back_appends_nothing(state: AppState):
    state.toggle_task("t1")
    result = state.toggle_task("t1")

    assert not result.entity.is_completed
    assert result.progress == []
    assert len(state.get_project("p1").progress_history) == 1


def test_toggle_task_without_project(state: AppState):
    state.create_task(Task(id="loose", content="整理名片", date=date.today()))
    result = state.toggle_task("loose")

    assert result.entity.is_completed
    assert result.progress == []
    assert state.get_project("p1").progress_history == []


def test_complete_task_is_idempotent(state: AppState):
    state.complete_task("t1")
    state.complete_task("t1")
    assert state.get_task("t1").is_completed
    assert len(state.get_project("p1").progress_history) == 1


def test_stage_change_records_transition(state: AppState):
    result = state.update_stage("p1", ProjectStage.SIGNED)

    assert result.entity.stage == ProjectStage.SIGNED
    assert len(result.progress) == 1
    assert result.progress[0].type == ProgressType.STAGE_CHANGE
    assert result.progress[0].content == "阶段推进：商务谈判 → 签约"


def test_same_stage_records_nothing(state: AppState):
    result = state.update_stage("p1", ProjectStage.NEGOTIATION)
    assert result.progress == []
    assert state.get_project("p1").progress_history == []


def test_update_project_keeps_history(state: AppState):
    state.toggle_task("t1")
    current = state.get_project("p1")
    edited = current.model_copy(update={"budget": "50万", "progress_history": []})

    result = state.update_project(edited)

    assert result.entity.budget == "50万"
    assert len(result.entity.progress_history) == 1
    assert result.entity.updated_at >= current.updated_at


def test_update_project_with_new_stage_records_transition(state: AppState):
    current = state.get_project("p1")

    result = state.update_project(current.model_copy(update={"stage": ProjectStage.SIGNED, "budget": "60万"}))

    assert result.entity.stage == ProjectStage.SIGNED
    assert [e.content for e in result.progress] == ["阶段推进：商务谈判 → 签约"]
    assert state.get_project("p1").progress_history == result.progress


def test_update_project_with_same_stage_records_nothing(state: AppState):
    result = state.update_project(state.get_project("p1").model_copy(update={"budget": "60万"}))
    assert result.progress == []
    assert state.get_project("p1").progress_history == []


def test_new_okr_records_objective(state: AppState):
    result = state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访"), KeyResult(id="kr2", content="确认预算")))

    assert len(result.progress) == 1
    entry = result.progress[0]
    assert entry.type == ProgressType.KR_PROGRESS
    assert entry.content == "设定OKR：拿下Alpha"
    assert entry.details == "包含2个KR"
    assert state.okr_for_project("p1").id == "o1"


def test_kr_progress_change_records_entry(state: AppState):
    state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访")))
    result = state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访", progress=50)))

    assert len(result.progress) == 1
    assert result.progress[0].content == "KR进度更新：完成拜访"
    assert result.progress[0].details == "0% → 50%"


def test_kr_progress_label_is_truncated(state: AppState):
    long_content = "在本季度内完成全部二十家重点客户的深度拜访与需求访谈"
    state.upsert_okr(_okr(KeyResult(id="kr1", content=long_content)))
    result = state.upsert_okr(_okr(KeyResult(id="kr1", content=long_content, progress=30)))

    assert result.progress[0].content == f"KR进度更新：{long_content[:20]}..."


def test_added_key_results_record_single_entry(state: AppState):
    state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访")))
    result = state.upsert_okr(
        _okr(
            KeyResult(id="kr1", content="完成拜访"),
            KeyResult(id="kr2", content="确认预算"),
            KeyResult(id="kr3", content="提交方案"),
        )
    )

    assert len(result.progress) == 1
    assert result.progress[0].content == "新增2个KR"
    assert result.progress[0].details == "确认预算; 提交方案"


def test_unchanged_okr_records_nothing(state: AppState):
    state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访")))
    result = state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访"), objective="新目标"))
    assert result.progress == []
    assert state.okr_for_project("p1").objective == "新目标"


def test_removed_key_result_clears_task_links(state: AppState):
    state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访"), KeyResult(id="kr2", content="确认预算")))
    state.update_task("t1", kr_id="kr1")

    state.upsert_okr(_okr(KeyResult(id="kr2", content="确认预算")))

    assert state.get_task("t1").kr_id is None


def test_delete_okr_clears_task_links(state: AppState):
    state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访")))
    state.update_task("t1", kr_id="kr1")

    state.delete_okr("o1")

    assert state.okr_for_project("p1") is None
    assert state.get_task("t1").kr_id is None


def test_okr_lookup_first_match_wins(state: AppState, project, task):
    first = _okr(KeyResult(id="kr1", content="A"), okr_id="o1")
    second = _okr(KeyResult(id="kr2", content="B"), okr_id="o2")
    state.replace_all([project], [task], [first, second])

    assert state.okr_for_project("p1").id == "o1"


def test_update_task_leaves_link_when_unset(state: AppState):
    state.update_task("t1", kr_id="kr9")
    result = state.update_task("t1", content="发送修订版报价单")

    assert result.entity.content == "发送修订版报价单"
    assert result.entity.kr_id == "kr9"


def test_delete_project_cascades(state: AppState):
    state.upsert_okr(_okr(KeyResult(id="kr1", content="完成拜访")))
    state.delete_project("p1")

    assert state.projects() == []
    assert state.tasks() == []
    assert state.okrs() == []


def test_unknown_entities_raise(state: AppState):
    with pytest.raises(NotFoundError):
        state.get_project("missing")
    with pytest.raises(NotFoundError):
        state.toggle_task("missing")
    with pytest.raises(NotFoundError):
        state.update_stage("missing", ProjectStage.DEMO)


def test_add_progress_rejects_empty_content(state: AppState):
    with pytest.raises(ValueError):
        state.add_progress("p1", ProgressType.REPORT, "   ")


def test_stats(state: AppState):
    state.upsert_okr(_okr(KeyResult(id="kr1", content="A", progress=40), KeyResult(id="kr2", content="B", progress=60)))
    state.toggle_task("t1")

    stats = state.stats()

    assert stats["projectCount"] == 1
    assert stats["closedProjects"] == 0
    assert stats["ongoingProjects"] == 1
    assert stats["completedTasks"] == 1
    assert stats["pendingTasks"] == 0
    assert stats["okrCount"] == 1
    assert stats["averageOkrProgress"] == 50


def test_key_result_progress_is_clamped():
    assert KeyResult(id="kr", content="x", progress=150).progress == 100
    assert KeyResult(id="kr", content="x", progress=-5).progress == 0
