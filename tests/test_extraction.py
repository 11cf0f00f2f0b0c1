"""Tests for parsing structured blocks out of advisor replies."""

from __future__ import annotations

from datetime import date

import pytest

from src.sales_advisor import extraction, prompts
from src.sales_advisor.schemas import ClientType, KeyResult, ProjectStage

WEDNESDAY = date(2024, 6, 5)


def _intake(**overrides) -> dict:
    payload = {
        "name": "Acme 采购案",
        "clientName": "Acme Corp",
        "clientType": "终端客户",
        "stage": "初次接触",
        "description": "采购一套CRM",
        "suggestedOKR": {"objective": "拿下Acme", "keyResults": ["约见CTO", "确认预算", "完成演示"]},
        "complete": True,
    }
    payload.update(overrides)
    return payload


def test_intake_block_with_complete_yields_payload(make_reply):
    reply = make_reply("好，信息齐了。", prompts.INTAKE_MARKER, _intake())

    outcome = extraction.parse_intake_reply(reply)

    assert outcome.display_text == "好，信息齐了。"
    payload = outcome.payload
    assert payload is not None
    assert payload.name == "Acme 采购案"
    assert payload.client_name == "Acme Corp"
    assert payload.client_type == ClientType.END_CUSTOMER
    assert payload.stage == ProjectStage.FIRST_CONTACT
    assert payload.suggested_okr.key_results == ["约见CTO", "确认预算", "完成演示"]


@pytest.mark.parametrize("complete", [False, "false", None])
def test_intake_block_without_complete_is_ignored(make_reply, complete):
    data = _intake(complete=complete)
    if complete is None:
        data.pop("complete")

    outcome = extraction.parse_intake_reply(make_reply("还差点信息。", prompts.INTAKE_MARKER, data))

    assert outcome.payload is None
    assert outcome.display_text == "还差点信息。"


def test_intake_requires_name_and_client(make_reply):
    outcome = extraction.parse_intake_reply(make_reply("嗯", prompts.INTAKE_MARKER, _intake(clientName="  ")))
    assert outcome.payload is None


def test_intake_unknown_enum_values_become_none(make_reply):
    reply = make_reply("ok", prompts.INTAKE_MARKER, _intake(clientType="大客户", stage="随便聊聊"))

    payload = extraction.parse_intake_reply(reply).payload

    assert payload.client_type is None
    assert payload.stage is None


def test_intake_drops_incomplete_okr_suggestion(make_reply):
    reply = make_reply("ok", prompts.INTAKE_MARKER, _intake(suggestedOKR={"objective": "", "keyResults": ["x"]}))
    assert extraction.parse_intake_reply(reply).payload.suggested_okr is None


def test_partial_intake_block_is_kept_as_draft(make_reply):
    partial = {"clientName": "Acme Corp", "budget": "80万", "complete": False}

    outcome = extraction.parse_intake_reply(make_reply("公司名记下了。", prompts.INTAKE_MARKER, partial))

    assert outcome.payload is None
    assert outcome.draft == partial


def test_complete_block_fills_in_draft(make_reply):
    draft = {"clientName": "Acme Corp", "budget": "80万", "complete": False}
    final = {"name": "Acme 采购案", "clientName": "", "budget": None, "complete": True}

    outcome = extraction.parse_intake_reply(make_reply("齐了。", prompts.INTAKE_MARKER, final), draft)

    assert outcome.draft is None
    assert outcome.payload.name == "Acme 采购案"
    assert outcome.payload.client_name == "Acme Corp"
    assert outcome.payload.budget == "80万"


def test_malformed_block_keeps_collecting():
    reply = f"看一下\n{prompts.INTAKE_MARKER}\n```json\n{{\"name\": \"Acme\", \n```"

    outcome = extraction.parse_intake_reply(reply)

    assert outcome.payload is None
    assert outcome.parse_failed
    assert outcome.display_text == "看一下"


def test_trailing_commas_are_tolerated():
    reply = (
        f"{prompts.INTAKE_MARKER}\n```json\n"
        '{"name": "Acme 采购案", "clientName": "Acme Corp", "complete": true,}\n```'
    )
    assert extraction.parse_intake_reply(reply).payload.name == "Acme 采购案"


def test_bare_json_fence_without_marker():
    reply = '总结如下\n```json\n{"name": "Acme 采购案", "clientName": "Acme Corp", "complete": true}\n```'

    outcome = extraction.parse_intake_reply(reply)

    assert outcome.payload is not None
    assert outcome.display_text == "总结如下"


def test_reply_without_block_is_plain_text():
    outcome = extraction.parse_intake_reply("  客户叫什么？  ")
    assert outcome.payload is None
    assert not outcome.parse_failed
    assert outcome.display_text == "客户叫什么？"


def test_non_object_json_is_rejected():
    with pytest.raises(extraction.ExtractionError):
        extraction.parse_json_lenient("[1, 2]")


def test_daily_report_payload(make_reply):
    data = {
        "analysis": "跟进太慢。",
        "suggestedTasks": [
            {"content": "约CTO", "date": "2024-06-06", "suggestedKRContent": "约见CTO"},
            {"content": "发方案", "date": "not-a-date"},
            {"content": "", "date": "2024-06-07"},
        ],
        "projectUpdates": {"budget": "80万", "competitors": ""},
        "complete": True,
    }

    payload = extraction.parse_daily_report_reply(make_reply("点评", prompts.REPORT_MARKER, data)).payload

    assert payload.analysis == "跟进太慢。"
    assert [t.content for t in payload.suggested_tasks] == ["约CTO"]
    assert payload.suggested_tasks[0].date == date(2024, 6, 6)
    assert payload.suggested_tasks[0].suggested_kr_content == "约见CTO"
    assert payload.project_updates.filled_fields() == ["budget"]
    assert payload.suggested_okr is None


def test_daily_report_with_nothing_reviewable(make_reply):
    outcome = extraction.parse_daily_report_reply(make_reply("嗯", prompts.REPORT_MARKER, {"complete": True}))
    assert outcome.payload is None


def test_task_follow_up_completion_marker():
    outcome = extraction.parse_task_follow_up_reply(f"干得不错，下一步呢？{prompts.TASK_DONE_MARKER}")

    assert outcome.display_text == "干得不错，下一步呢？"
    assert outcome.payload.task_completed
    assert outcome.payload.new_task is None


def test_task_follow_up_new_task(make_reply):
    reply = make_reply("记下了。", prompts.NEW_TASK_MARKER, {"content": "回访王总", "date": "2024-06-07"})

    outcome = extraction.parse_task_follow_up_reply(reply)

    assert outcome.display_text == "记下了。"
    assert not outcome.payload.task_completed
    assert outcome.payload.new_task.content == "回访王总"


def test_task_follow_up_plain_reply():
    assert extraction.parse_task_follow_up_reply("为什么没完成？").payload is None


def test_project_chat_sections():
    reply = (
        "建议如下。\n\n"
        f"{prompts.TASK_LIST_MARKER}\n"
        "- 明天：联系张总确认需求 [KR:kr1]\n"
        "- 本周五：发送报价单\n\n"
        f"{prompts.NEW_KR_MARKER}\n"
        "- 本月内完成3次客户拜访\n"
    )

    outcome = extraction.parse_project_chat_reply(reply, WEDNESDAY)

    assert outcome.display_text == "建议如下。"
    tasks = outcome.payload.tasks
    assert [(t.content, t.date, t.kr_ref) for t in tasks] == [
        ("联系张总确认需求", date(2024, 6, 6), "kr1"),
        ("发送报价单", date(2024, 6, 7), None),
    ]
    assert outcome.payload.key_results == ["本月内完成3次客户拜访"]


def test_project_chat_without_sections():
    outcome = extraction.parse_project_chat_reply("客户在拖时间。", WEDNESDAY)
    assert outcome.payload is None
    assert outcome.display_text == "客户在拖时间。"


@pytest.mark.parametrize(
    "line, expected",
    [
        ("- 今天：打电话", date(2024, 6, 5)),
        ("- 明天：打电话", date(2024, 6, 6)),
        ("- 后天：打电话", date(2024, 6, 7)),
        ("- 本周五：打电话", date(2024, 6, 7)),
        ("- 本周一：打电话", date(2024, 6, 10)),
        ("- 本周三：打电话", date(2024, 6, 5)),
        ("- 打电话", date(2024, 6, 6)),
    ],
)
def test_resolve_date_hint(line, expected):
    assert extraction.resolve_date_hint(line, WEDNESDAY) == expected


def test_match_key_result():
    krs = [
        KeyResult(id="kr1", content="完成关键决策人拜访"),
        KeyResult(id="kr2", content="确定预算范围"),
        KeyResult(id="kr3", content="提交初步方案"),
    ]

    assert extraction.match_key_result("kr2", krs).id == "kr2"
    assert extraction.match_key_result("确定预算范围", krs).id == "kr2"
    assert extraction.match_key_result("预算", krs).id == "kr2"
    assert extraction.match_key_result("尽快提交初步方案并获得反馈", krs).id == "kr3"
    assert extraction.match_key_result("签合同", krs) is None
    assert extraction.match_key_result("", krs) is None


def test_match_key_result_ambiguous():
    krs = [KeyResult(id="a", content="拜访客户CTO"), KeyResult(id="b", content="拜访客户CEO")]
    assert extraction.match_key_result("拜访客户", krs) is None
