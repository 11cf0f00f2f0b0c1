"""Pydantic schemas for the sales advisor data structures."""
from __future__ import annotations

import datetime as dt
import secrets
import string
import time
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(prefix: str = "") -> str:
    """Return a unique identifier such as ``task-1718000000000-k3j9x0a``."""

    timestamp = int(time.time() * 1000)
    random_part = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"{prefix}-{timestamp}-{random_part}" if prefix else f"{timestamp}-{random_part}"


class ProjectStage(str, Enum):
    """Ordered steps of the sales pipeline."""

    FIRST_CONTACT = "初次接触"
    REQUIREMENTS = "需求确认"
    DEMO = "方案演示"
    NEGOTIATION = "商务谈判"
    SIGNED = "签约"
    IMPLEMENTATION = "实施"
    BRAND_MANAGEMENT = "品牌管理"


class ClientType(str, Enum):
    END_CUSTOMER = "终端客户"
    RESELLER = "代理商"
    VENDOR_PARTNER = "厂家伙伴"


class ProgressType(str, Enum):
    REPORT = "report"
    TASK_COMPLETED = "task_completed"
    KR_PROGRESS = "kr_progress"
    STAGE_CHANGE = "stage_change"


class _Model(BaseModel):
    """Base model exposing camelCase field names to API and export consumers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProgressEntry(_Model):
    """A single append-only record in a project's history."""

    id: str
    date: dt.date
    type: ProgressType
    content: str
    details: Optional[str] = None


class Project(_Model):
    """A sales opportunity tracked through the pipeline."""

    id: str
    name: str
    client_name: str
    client_type: ClientType
    stage: ProjectStage
    color: str
    updated_at: dt.datetime
    description: Optional[str] = None
    budget: Optional[str] = None
    decision_maker: Optional[str] = None
    competitors: Optional[str] = None
    next_step: Optional[str] = None
    progress_history: List[ProgressEntry] = Field(default_factory=list)


class Task(_Model):
    """A dated to-do item, optionally attached to a project and a key result."""

    id: str
    project_id: Optional[str] = None
    content: str
    date: dt.date
    is_completed: bool = False
    kr_id: Optional[str] = None


class KeyResult(_Model):
    id: str
    content: str
    progress: int = 0

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value):
        if value is None:
            return 0
        return min(100, max(0, int(value)))


class OKR(_Model):
    """Objective and key results for a project."""

    id: str
    project_id: str
    objective: str
    key_results: List[KeyResult] = Field(default_factory=list)


class ChatMessage(_Model):
    id: str
    role: Literal["user", "assistant"]
    content: str


class ExportData(_Model):
    """Full dump of the three collections."""

    exported_at: dt.datetime
    projects: List[Project] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    okrs: List[OKR] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Extraction payloads returned by the language model
# ---------------------------------------------------------------------------


class SuggestedTask(_Model):
    content: str
    date: dt.date
    suggested_kr_content: Optional[str] = None


class SuggestedOKR(_Model):
    objective: str = ""
    key_results: List[str] = Field(default_factory=list)


class ProjectUpdates(_Model):
    """Project fields the model picked up from the conversation."""

    description: Optional[str] = None
    budget: Optional[str] = None
    decision_maker: Optional[str] = None
    competitors: Optional[str] = None
    next_step: Optional[str] = None

    def filled_fields(self) -> List[str]:
        """Return the names of fields carrying a non-empty value."""
        return [name for name, value in self if value and value.strip()]


class ProjectIntakePayload(_Model):
    """Project information gathered by the new-project conversation."""

    kind: Literal["project_intake"] = "project_intake"
    name: str
    client_name: str
    client_type: Optional[ClientType] = None
    stage: Optional[ProjectStage] = None
    description: Optional[str] = None
    budget: Optional[str] = None
    decision_maker: Optional[str] = None
    competitors: Optional[str] = None
    next_step: Optional[str] = None
    suggested_okr: Optional[SuggestedOKR] = None


class ReportAnalysisResult(_Model):
    """Structured outcome of a daily report."""

    kind: Literal["daily_report"] = "daily_report"
    analysis: str = ""
    suggested_tasks: List[SuggestedTask] = Field(default_factory=list)
    suggested_okr: Optional[SuggestedOKR] = None
    project_updates: Optional[ProjectUpdates] = None


class TaskFollowUpPayload(_Model):
    kind: Literal["task_follow_up"] = "task_follow_up"
    task_completed: bool = False
    new_task: Optional[SuggestedTask] = None


class ChatTaskSuggestion(_Model):
    content: str
    date: dt.date
    kr_ref: Optional[str] = None


class ProjectChatPayload(_Model):
    """Tasks and key results listed by the advisor during a project chat."""

    kind: Literal["project_chat"] = "project_chat"
    tasks: List[ChatTaskSuggestion] = Field(default_factory=list)
    key_results: List[str] = Field(default_factory=list)


class ProjectInsightResult(_Model):
    kind: Literal["project_insight"] = "project_insight"
    analysis: str = ""
    risks: List[str] = Field(default_factory=list)
    suggested_tasks: List[SuggestedTask] = Field(default_factory=list)
    suggested_krs: List[str] = Field(default_factory=list)


class GeneratedOKR(_Model):
    kind: Literal["generated_okr"] = "generated_okr"
    objective: str
    key_results: List[str] = Field(default_factory=list)


ExtractionPayload = Annotated[
    Union[
        ProjectIntakePayload,
        ReportAnalysisResult,
        TaskFollowUpPayload,
        ProjectChatPayload,
        ProjectInsightResult,
        GeneratedOKR,
    ],
    Field(discriminator="kind"),
]
