"""Prompt utilities for the sales advisor."""
from __future__ import annotations

import os
from datetime import date
from typing import Iterable, List, Optional, Sequence

from typing_extensions import TypedDict

from .schemas import OKR, Project, Task

DEFAULT_SYSTEM_PROMPT = (
    "你是一个名为“销售军师”的ToB销售和品牌专家。你的风格非常直接、犀利、不留情面。\n"
    "不要说废话，不要用客套话。\n"
    "直接指出用户的问题，分析客户的真实心理，并给出具体的、可执行的下一步行动建议。\n"
    "如果用户犯了错（比如跟进太慢、被客户忽悠），要严厉地指出来。"
)

INTAKE_MARKER = "【信息提取】"
REPORT_MARKER = "【汇报提取】"
TASK_DONE_MARKER = "【任务完成】"
NEW_TASK_MARKER = "【新建任务】"
TASK_LIST_MARKER = "【任务】"
NEW_KR_MARKER = "【新KR】"

INTAKE_GREETING = "我是你的销售军师，来帮你梳理这个新项目。\n\n先告诉我：这是个什么项目？客户叫什么？"

_NO_HISTORY = "暂无历史记录"
_NO_OKR = "暂无OKR"


def get_system_prompt() -> str:
    """Return the configured persona, defaulting to the sharp sales advisor."""

    override = os.environ.get("SYSTEM_PROMPT")
    if override and override.strip():
        return override.strip()
    return DEFAULT_SYSTEM_PROMPT


def daily_report_greeting(project: Project) -> str:
    return f"好，{project.name}项目。今天做了什么？有什么进展或问题？"


def task_follow_up_greeting(task: Task) -> str:
    return f"关于任务【{task.content}】，说说完成情况？"


def project_chat_greeting(project: Project) -> str:
    return (
        f"我是你的销售军师。关于【{project.name}】这个项目，你可以：\n\n"
        "1. 告诉我项目进展，我帮你分析\n"
        "2. 问我客户可能在想什么\n"
        "3. 让我帮你梳理下一步行动\n"
        "4. 说\"生成任务\"我会帮你创建待办\n\n"
        "现在，说说情况吧。"
    )


# ---------------------------------------------------------------------------
# Context sections
# ---------------------------------------------------------------------------


def progress_summary(project: Project, limit: int = 10, with_details: bool = True) -> str:
    """Render the latest ``limit`` history entries, oldest first."""

    history = project.progress_history[-limit:]
    if not history:
        return _NO_HISTORY

    lines = []
    for entry in history:
        line = f"[{entry.date.isoformat()}] {entry.content}"
        if with_details and entry.details:
            line += f" ({entry.details})"
        lines.append(line)
    return "\n".join(lines)


def _optional_lines(project: Project) -> List[str]:
    fields = [
        ("项目背景", project.description),
        ("预算范围", project.budget),
        ("关键决策人", project.decision_maker),
        ("竞品情况", project.competitors),
        ("当前计划", project.next_step),
    ]
    return [f"- {label}：{value}" for label, value in fields if value]


def project_basics(project: Project) -> str:
    lines = [
        f"- 项目名称：{project.name}",
        f"- 客户名称：{project.client_name}",
        f"- 客户类型：{project.client_type.value}",
        f"- 当前阶段：{project.stage.value}",
    ]
    lines.extend(_optional_lines(project))
    return "\n".join(lines)


def okr_summary(okr: Optional[OKR]) -> str:
    if okr is None:
        return _NO_OKR
    krs = "\n".join(
        f"  {i}. {kr.content} (进度{kr.progress}%)" for i, kr in enumerate(okr.key_results, start=1)
    )
    return f"目标：{okr.objective}\n关键结果：\n{krs}"


def _task_lines(tasks: Iterable[Task], symbol: str, with_date: bool = False) -> str:
    lines = []
    for task in tasks:
        suffix = f" ({task.date.isoformat()})" if with_date else ""
        lines.append(f"  {symbol} {task.content}{suffix}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Conversational system prompts
# ---------------------------------------------------------------------------


def intake_system_prompt() -> str:
    return f"""你是"销售军师"，正在帮用户创建一个新的ToB销售项目。

你的任务：
1. 通过对话逐步收集项目关键信息
2. 每次只问1-2个问题，不要一次问太多
3. 说话直接、不啰嗦
4. 当信息收集足够时，总结并输出结构化数据

需要收集的信息：
- 项目名称（必填）
- 客户名称（必填）
- 客户类型：终端客户/代理商/厂家伙伴
- 当前阶段：初次接触/需求确认/方案演示/商务谈判/签约/实施/品牌管理
- 项目背景和目标（description）
- 预算范围（budget）
- 关键决策人（decisionMaker）
- 竞品情况（competitors）
- 当前下一步计划（nextStep）

当你认为信息已经足够（至少有项目名、客户名、客户类型、阶段和一些背景描述），在回复的最后添加：

{INTAKE_MARKER}
```json
{{
  "name": "项目名称",
  "clientName": "客户名称",
  "clientType": "终端客户|代理商|厂家伙伴",
  "stage": "当前阶段",
  "description": "项目描述",
  "budget": "预算范围",
  "decisionMaker": "关键决策人",
  "competitors": "竞品情况",
  "nextStep": "下一步计划",
  "suggestedOKR": {{
    "objective": "基于项目信息的推荐目标",
    "keyResults": ["KR1", "KR2", "KR3"]
  }},
  "complete": true
}}
```

只有当信息足够完整时才输出JSON，complete设为true。如果信息还不够，继续追问。"""


def daily_report_system_prompt(
    project: Project,
    existing_krs: Sequence[str],
    completed_tasks: Sequence[str],
    pending_tasks: Sequence[str],
    today: date,
) -> str:
    kr_lines = "\n".join(f"{i}. {kr}" for i, kr in enumerate(existing_krs, start=1)) or "暂未设定KR"
    task_sections = []
    if completed_tasks:
        task_sections.append("已完成：\n" + "\n".join(f"✓ {t}" for t in completed_tasks))
    if pending_tasks:
        task_sections.append("待完成：\n" + "\n".join(f"○ {t}" for t in pending_tasks))

    return f"""你是"销售军师"，正在帮用户做每日工作汇报。你的风格直接、犀利、不啰嗦。

## 项目全貌

### 基本信息
{project_basics(project)}

### 当前OKR
{kr_lines}

### 任务情况
{chr(10).join(task_sections) or "暂无任务"}

### 项目进展历史（最近）
{progress_summary(project)}

---
今天日期：{today.isoformat()}

## 你的任务
1. 基于以上项目全貌，理解项目当前状态
2. 通过对话收集今日工作汇报的关键信息
3. 每次只问1-2个问题，追问要点：今天做了什么？遇到什么问题？客户反馈如何？下一步计划？
4. 结合项目历史，给出有针对性的建议
5. 当信息足够时，输出结构化数据

当你认为汇报信息足够完整时，在回复最后添加：

{REPORT_MARKER}
```json
{{
  "analysis": "你的犀利点评和建议",
  "suggestedTasks": [
    {{"content": "具体任务", "date": "YYYY-MM-DD", "suggestedKRContent": "关联的KR内容（如果有）"}}
  ],
  "suggestedOKR": {{
    "objective": "建议的目标（如果需要新增）",
    "keyResults": ["KR1", "KR2"]
  }},
  "projectUpdates": {{
    "description": "更新的项目描述（如果有新信息）",
    "budget": "更新的预算信息（如果提到）",
    "decisionMaker": "更新的决策人信息（如果提到）",
    "competitors": "更新的竞品信息（如果提到）",
    "nextStep": "更新的下一步计划（如果提到）"
  }},
  "complete": true
}}
```

注意：
- suggestedTasks中的suggestedKRContent应该匹配现有KR或建议的新KR
- projectUpdates只包含用户明确提到的新信息，没提到的字段不要包含
- 如果信息还不够，继续追问，不要输出JSON"""


def task_follow_up_system_prompt(task: Task, project: Optional[Project], day_tasks: Sequence[Task], today: date) -> str:
    others = [t for t in day_tasks if t.id != task.id]
    completed_count = sum(1 for t in day_tasks if t.is_completed)
    other_lines = "\n".join(f"{'✓' if t.is_completed else '○'} {t.content}" for t in others) or "无"

    if project is not None:
        project_lines = [
            f"- 项目名称：{project.name}",
            f"- 客户名称：{project.client_name}",
            f"- 当前阶段：{project.stage.value}",
        ]
        if project.next_step:
            project_lines.append(f"- 下一步计划：{project.next_step}")
        project_section = "\n".join(project_lines)
        history = progress_summary(project, limit=5, with_details=False)
    else:
        project_section = "未关联项目"
        history = _NO_HISTORY

    return f"""你是"销售军师"，正在帮用户汇报任务完成情况。你的风格直接、简洁。

## 当前任务
- 任务内容：{task.content}
- 计划日期：{task.date.isoformat()}
- 完成状态：{'已完成' if task.is_completed else '未完成'}

## 关联项目
{project_section}

## 今日其他任务（共{len(day_tasks)}个，已完成{completed_count}个）
{other_lines}

## 项目近期进展
{history}

---
今天日期：{today.isoformat()}

## 你的任务
1. 追问任务完成情况：做了什么？结果如何？有什么收获或问题？
2. 如果任务完成了，给予简短肯定并问下一步
3. 如果任务没完成，问原因和计划
4. 根据对话内容给出建议

当用户明确表示任务完成时，在回复末尾添加：
{TASK_DONE_MARKER}

如果用户提到了新的待办事项，在回复末尾添加：
{NEW_TASK_MARKER}
```json
{{"content": "任务内容", "date": "YYYY-MM-DD"}}
```

保持简洁，每次回复不超过3句话。"""


def project_context(project: Project, okr: Optional[OKR], tasks: Sequence[Task]) -> str:
    pending = [t for t in tasks if not t.is_completed]
    completed = [t for t in tasks if t.is_completed]

    return f"""【项目全貌】
- 项目名称：{project.name}
- 客户名称：{project.client_name}
- 客户类型：{project.client_type.value}
- 当前阶段：{project.stage.value}
- 项目描述：{project.description or '暂无描述'}
- 预算范围：{project.budget or '未知'}
- 关键决策人：{project.decision_maker or '未知'}
- 竞品情况：{project.competitors or '未知'}
- 当前下一步：{project.next_step or '待定'}

【OKR情况】
{okr_summary(okr)}

【任务情况】
- 待完成：{len(pending)}个
{_task_lines(pending[:5], '-', with_date=True)}
- 已完成：{len(completed)}个
{_task_lines(completed[:5], '✓')}

【项目进展历史（最近）】
{progress_summary(project)}"""


def project_chat_system_prompt(project: Project, okr: Optional[OKR], tasks: Sequence[Task]) -> str:
    if okr is not None and okr.key_results:
        kr_list = "\n".join(
            f"KR{i}: {kr.content} (ID:{kr.id})" for i, kr in enumerate(okr.key_results, start=1)
        )
    else:
        kr_list = "暂无KR"

    return f"""{get_system_prompt()}

当前项目背景：
{project_context(project, okr, tasks)}

当前项目的关键结果(KR)：
{kr_list}

回复要求：
1. 回复要有深度和具体内容，不要太简短
2. 针对用户说的情况，给出分析和建议
3. 如果用户要求生成任务，在回复最后用{TASK_LIST_MARKER}标记列出，并指明关联的KR（如果有），格式如：
   {TASK_LIST_MARKER}
   - 明天：联系张总确认需求 [KR:kr-id-here]
   - 后天：准备方案PPT [KR:kr-id-here]
   - 本周五：发送报价单
   注意：[KR:xxx]是可选的，只有任务明显属于某个KR时才添加；xxx可以是现有KR的ID，也可以是下面新KR的内容
4. 如果用户提供了新的项目信息，帮他总结关键点
5. 如果用户要求生成KR、补充KR、或者你觉得需要新增KR来推进项目，用{NEW_KR_MARKER}标记列出，格式如：
   {NEW_KR_MARKER}
   - 本月内完成3次客户拜访
   - 提交初版方案并获得反馈"""


# ---------------------------------------------------------------------------
# One-shot generation prompts and response schemas
# ---------------------------------------------------------------------------


class TaskSchema(TypedDict):
    content: str
    date: str


class ReportAnalysisSchema(TypedDict):
    analysis: str
    suggestedTasks: list[TaskSchema]


class OKRSuggestionSchema(TypedDict):
    objective: str
    keyResults: list[str]


class ReportAnalysisWithOKRSchema(ReportAnalysisSchema):
    suggestedOKR: OKRSuggestionSchema


class InsightSchema(TypedDict):
    analysis: str
    risks: list[str]
    suggestedTasks: list[TaskSchema]
    suggestedKRs: list[str]


def daily_report_analysis_prompt(report_text: str, project_names: Sequence[str], include_okr: bool, today: date) -> str:
    okr_section = ""
    if include_okr:
        okr_section = """
3. suggestedOKR（OKR建议）：如果汇报中提到了项目目标或阶段性成果，提炼出：
   - objective: 一个清晰的目标（O）
   - keyResults: 3个可量化的关键结果（KRs）
"""
    return f"""今日工作汇报内容：
"{report_text}"

涉及项目：{', '.join(project_names)}
今天日期：{today.isoformat()}

请分析以上汇报，按以下要求输出：

1. analysis（分析）：分析客户心理或当前局势，给出下一步行动建议。用直接、犀利的语气。

2. suggestedTasks（待办任务）：从建议中提炼出3-5个具体的待办任务，每个任务包含：
   - content: 任务内容（具体、可执行）
   - date: 计划日期（YYYY-MM-DD格式，通常是明天或近几天）
{okr_section}"""


def okr_generation_prompt(project: Project, existing_okr: Optional[OKR], tasks: Sequence[Task]) -> str:
    pending = [t for t in tasks if not t.is_completed]
    completed = [t for t in tasks if t.is_completed]
    pending_block = f"待办任务：\n{_task_lines(pending[:5], '-')}" if pending else ""

    return f"""为以下ToB销售项目制定OKR（目标与关键结果）。

## 项目全貌

### 基本信息
{project_basics(project)}

### 现有OKR
{okr_summary(existing_okr)}

### 任务情况
- 待完成：{len(pending)}个
- 已完成：{len(completed)}个
{pending_block}

### 项目进展历史（最近）
{progress_summary(project)}

## 要求
1. 目标（Objective）要清晰、有挑战性，符合当前项目阶段
2. 关键结果（Key Results）必须可量化、与项目当前阶段强相关、能真正推动项目向前
3. 必须提供3-5个关键结果
4. 如果已有OKR，建议的应该是补充而非重复

**重要：必须同时返回 objective 和 keyResults（至少3个）**"""


def insight_prompt(project: Project, tasks: Sequence[Task], okr: Optional[OKR], today: date) -> str:
    pending = [t for t in tasks if not t.is_completed]
    completed = [t for t in tasks if t.is_completed]
    overdue = [t for t in pending if t.date < today]
    pending_block = f"待办事项：\n{_task_lines(pending, '-', with_date=True)}" if pending else ""

    return f"""分析以下ToB销售项目的当前状态，并给出结构化的建议。

## 项目全貌

### 基本信息
{project_basics(project)}

### 当前OKR
{okr_summary(okr)}

### 任务情况
- 待完成：{len(pending)}个
- 已完成：{len(completed)}个
- 过期未完成：{len(overdue)}个
{pending_block}

### 项目进展历史（最近）
{progress_summary(project)}

今天日期：{today.isoformat()}

## 要求
请分析项目状态并给出：
1. analysis: 项目状态分析和核心建议（2-3句话，直接、犀利）
2. risks: 2-3个最需要关注的风险点
3. suggestedTasks: 2-4个建议的下一步行动任务，每个任务包含内容和建议日期（格式YYYY-MM-DD）
4. suggestedKRs: 1-2个建议添加或关注的关键结果（如果当前OKR缺失或不完善）

建议必须与项目当前阶段和背景强相关，具体、可执行；如果有过期任务要严厉指出。"""
