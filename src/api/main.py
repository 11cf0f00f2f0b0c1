"""FastAPI application entrypoint."""
from __future__ import annotations

import datetime as dt
import logging
import uuid
from threading import Lock
from typing import Any, Callable, Dict, Optional, Union

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from src.sales_advisor import export, generation, ingest, llm_client, session_store
from src.sales_advisor.data_service import DataService
from src.sales_advisor.rules import RuleViolation
from src.sales_advisor.schemas import (
    OKR,
    ClientType,
    ProgressType,
    Project,
    ProjectStage,
    Task,
    generate_id,
)
from src.sales_advisor.state import AppState, MutationResult, NotFoundError
from src.sales_advisor.store_client import StoreClient
from src.sales_advisor.workflows import COLORS, WORKFLOW_TYPES, ProjectIntakeWorkflow, WorkflowStateError

app = FastAPI(title="Sales Advisor")

logger = logging.getLogger(__name__)

MAX_AUDIO_SIZE = 10 * 1024 * 1024  # 10 MB
MAX_BACKUP_SIZE = 5 * 1024 * 1024  # 5 MB
SESSION_COOKIE_NAME = "chat_session_id"

REVIEW_TYPES = {
    generation.OKRSuggestionReview.kind: generation.OKRSuggestionReview,
    generation.InsightReview.kind: generation.InsightReview,
}

_state: Optional[AppState] = None
_state_lock = Lock()


def get_state() -> AppState:
    """Return the shared state container, loading it on first use."""

    global _state
    with _state_lock:
        if _state is None:
            _state = AppState.load(DataService(StoreClient.from_env()))
        return _state


def set_state(state: Optional[AppState]) -> None:
    """Install a state container (``None`` forces a reload on next use)."""

    global _state
    with _state_lock:
        _state = state


def _json_error(status_code: int, message: str) -> JSONResponse:
    """Return a standardized JSON error response."""

    logger.warning("Returning error %s: %s", status_code, message)
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning("HTTPException at %s: %s", request.url.path, message)
    return JSONResponse(status_code=exc.status_code, content={"error": message})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("Validation error at %s: %s", request.url.path, exc.errors())
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"error": "Invalid request payload."})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _json_error(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(WorkflowStateError)
async def workflow_state_handler(request: Request, exc: WorkflowStateError) -> JSONResponse:
    return _json_error(status.HTTP_409_CONFLICT, str(exc))


@app.exception_handler(RuleViolation)
async def rule_violation_handler(request: Request, exc: RuleViolation) -> JSONResponse:
    return _json_error(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return _json_error(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(KeyError)
async def key_error_handler(request: Request, exc: KeyError) -> JSONResponse:
    message = exc.args[0] if exc.args else "Unknown item."
    return _json_error(status.HTTP_400_BAD_REQUEST, str(message))


@app.exception_handler(generation.TranscriptionError)
async def transcription_error_handler(request: Request, exc: generation.TranscriptionError) -> JSONResponse:
    return _json_error(status.HTTP_502_BAD_GATEWAY, str(exc))


@app.middleware("http")
async def ensure_session_cookie(request: Request, call_next):
    """Ensure every request has a stable chat session identifier."""

    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    new_session = False

    if not session_id:
        session_id = str(uuid.uuid4())
        new_session = True
        logger.debug("Generated new chat session id %s", session_id)

    request.state.chat_session_id = session_id

    response = await call_next(request)

    if new_session:
        response.set_cookie(
            SESSION_COOKIE_NAME,
            session_id,
            httponly=True,
            samesite="lax",
        )
        logger.info("Assigned chat session cookie %s", session_id)

    return response


def _get_session_id(request: Request) -> str:
    session_id = getattr(request.state, "chat_session_id", None)
    if not session_id:
        session_id = request.cookies.get(SESSION_COOKIE_NAME) or str(uuid.uuid4())
        request.state.chat_session_id = session_id
    return session_id


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectCreateRequest(_Request):
    name: str
    client_name: str
    client_type: ClientType = ClientType.END_CUSTOMER
    stage: ProjectStage = ProjectStage.FIRST_CONTACT
    color: Optional[str] = None
    description: Optional[str] = None
    budget: Optional[str] = None
    decision_maker: Optional[str] = None
    competitors: Optional[str] = None
    next_step: Optional[str] = None


_REQUIRED_PROJECT_FIELDS = ("name", "client_name", "client_type", "color")


class ProjectUpdateRequest(_Request):
    """Editable project fields; the stage moves through its own endpoint."""

    name: Optional[str] = None
    client_name: Optional[str] = None
    client_type: Optional[ClientType] = None
    color: Optional[str] = None
    description: Optional[str] = None
    budget: Optional[str] = None
    decision_maker: Optional[str] = None
    competitors: Optional[str] = None
    next_step: Optional[str] = None


class StageRequest(_Request):
    stage: ProjectStage


class ProgressRequest(_Request):
    type: ProgressType = ProgressType.REPORT
    content: str
    details: Optional[str] = None


class TaskCreateRequest(_Request):
    project_id: Optional[str] = None
    content: str
    date: dt.date
    kr_id: Optional[str] = None


class TaskUpdateRequest(_Request):
    content: Optional[str] = None
    date: Optional[dt.date] = None
    kr_id: Optional[str] = None


class WorkflowOpenRequest(_Request):
    entity_id: Optional[str] = None


class ChatSendRequest(_Request):
    """Schema for chat messages."""

    message: str


class SelectRequest(_Request):
    group: str
    key: Union[int, str]
    selected: bool = True


class MapRequest(_Request):
    task_index: int
    kr_id: Optional[str] = None


class ReportAnalyzeRequest(_Request):
    report: str
    include_okr: bool = False


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _mutation(name: str, result: MutationResult) -> Dict[str, Any]:
    return {
        name: _dump(result.entity) if result.entity is not None else None,
        "progress": [_dump(entry) for entry in result.progress],
        "persisted": result.persisted,
    }


# ---------------------------------------------------------------------------
# Health and collections
# ---------------------------------------------------------------------------


@app.get("/")
def read_root() -> Dict[str, Any]:
    """Health endpoint reporting which backends are configured."""

    state = get_state()
    return {
        "status": "ok",
        "storeConfigured": state.store_configured,
        "llmConfigured": llm_client.is_configured(),
    }


@app.get("/stats")
def read_stats() -> Dict[str, int]:
    return get_state().stats()


@app.post("/reload")
def reload_state() -> Dict[str, int]:
    state = get_state()
    state.reload()
    return state.stats()


@app.get("/projects")
def list_projects() -> list:
    return [_dump(project) for project in get_state().projects()]


@app.post("/projects", status_code=status.HTTP_201_CREATED)
def create_project(payload: ProjectCreateRequest) -> Dict[str, Any]:
    name = payload.name.strip()
    client_name = payload.client_name.strip()
    if not name or not client_name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Project name and client name are required.")

    fields = payload.model_dump(exclude={"name", "client_name", "color"})
    project = Project(
        id=generate_id("project"),
        name=name,
        client_name=client_name,
        color=payload.color or COLORS[len(get_state().projects()) % len(COLORS)],
        updated_at=dt.datetime.now(dt.timezone.utc),
        **fields,
    )
    return _mutation("project", get_state().create_project(project))


@app.get("/projects/{project_id}")
def read_project(project_id: str) -> Dict[str, Any]:
    state = get_state()
    project = state.get_project(project_id)
    okr = state.okr_for_project(project_id)
    return {
        "project": _dump(project),
        "okr": _dump(okr) if okr else None,
        "tasks": [_dump(task) for task in state.tasks_for_project(project_id)],
    }


@app.put("/projects/{project_id}")
def update_project(project_id: str, payload: ProjectUpdateRequest) -> Dict[str, Any]:
    state = get_state()
    current = state.get_project(project_id)
    changes = payload.model_dump(exclude_unset=True)
    for name in _REQUIRED_PROJECT_FIELDS:
        if name in changes and not (changes[name] or "").strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Project {name} must not be empty.")
    updated = Project.model_validate({**current.model_dump(), **changes})
    return _mutation("project", state.update_project(updated))


@app.delete("/projects/{project_id}")
def delete_project(project_id: str) -> Dict[str, Any]:
    return _mutation("project", get_state().delete_project(project_id))


@app.post("/projects/{project_id}/stage")
def update_stage(project_id: str, payload: StageRequest) -> Dict[str, Any]:
    return _mutation("project", get_state().update_stage(project_id, payload.stage))


@app.post("/projects/{project_id}/progress", status_code=status.HTTP_201_CREATED)
def add_progress(project_id: str, payload: ProgressRequest) -> Dict[str, Any]:
    result = get_state().add_progress(project_id, payload.type, payload.content, payload.details)
    return _mutation("entry", result)


@app.get("/tasks")
def list_tasks(
    project_id: Optional[str] = Query(None, alias="projectId"),
    day: Optional[dt.date] = Query(None, alias="date"),
) -> list:
    state = get_state()
    tasks = state.tasks_for_project(project_id) if project_id else state.tasks()
    if day is not None:
        tasks = [task for task in tasks if task.date == day]
    return [_dump(task) for task in tasks]


@app.post("/tasks", status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreateRequest) -> Dict[str, Any]:
    state = get_state()
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Task content must not be empty.")
    if payload.project_id:
        state.get_project(payload.project_id)

    task = Task(
        id=generate_id("task"),
        project_id=payload.project_id or None,
        content=content,
        date=payload.date,
        kr_id=payload.kr_id or None,
    )
    return _mutation("task", state.create_task(task))


@app.patch("/tasks/{task_id}")
def update_task(task_id: str, payload: TaskUpdateRequest) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"content": payload.content, "day": payload.date}
    if "kr_id" in payload.model_fields_set:
        kwargs["kr_id"] = payload.kr_id
    return _mutation("task", get_state().update_task(task_id, **kwargs))


@app.post("/tasks/{task_id}/toggle")
def toggle_task(task_id: str) -> Dict[str, Any]:
    return _mutation("task", get_state().toggle_task(task_id))


@app.delete("/tasks/{task_id}")
def delete_task(task_id: str) -> Dict[str, Any]:
    return _mutation("task", get_state().delete_task(task_id))


@app.get("/okrs")
def list_okrs() -> list:
    return [_dump(okr) for okr in get_state().okrs()]


@app.put("/okrs")
def upsert_okr(payload: OKR) -> Dict[str, Any]:
    state = get_state()
    state.get_project(payload.project_id)
    return _mutation("okr", state.upsert_okr(payload))


@app.delete("/okrs/{okr_id}")
def delete_okr(okr_id: str) -> Dict[str, Any]:
    return _mutation("okr", get_state().delete_okr(okr_id))


# ---------------------------------------------------------------------------
# Conversational workflows
# ---------------------------------------------------------------------------


def _workflow_factory(kind: str, entity_id: Optional[str]) -> Callable[[], Any]:
    workflow_cls = WORKFLOW_TYPES.get(kind)
    if workflow_cls is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown workflow kind: {kind}")

    state = get_state()
    if workflow_cls is ProjectIntakeWorkflow:
        return lambda: workflow_cls(state)
    if not entity_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{kind} requires an entity id.")
    return lambda: workflow_cls(state, entity_id)


def _get_workflow(request: Request, kind: str, entity_id: Optional[str]):
    workflow = session_store.get_entry(_get_session_id(request), kind, entity_id)
    if workflow is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No open {kind} workflow.")
    return workflow


@app.post("/workflows/{kind}/open")
def open_workflow(kind: str, payload: WorkflowOpenRequest, request: Request) -> Dict[str, Any]:
    """Start a fresh workflow; an open one for the same entity is replaced."""

    factory = _workflow_factory(kind, payload.entity_id)
    workflow = session_store.open_entry(_get_session_id(request), kind, payload.entity_id, factory)
    return workflow.snapshot()


@app.get("/workflows/{kind}")
def read_workflow(kind: str, request: Request, entity_id: Optional[str] = Query(None, alias="entityId")) -> Dict[str, Any]:
    return _get_workflow(request, kind, entity_id).snapshot()


@app.delete("/workflows/{kind}")
def close_workflow(kind: str, request: Request, entity_id: Optional[str] = Query(None, alias="entityId")) -> Dict[str, bool]:
    session_store.close_entry(_get_session_id(request), kind, entity_id)
    return {"ok": True}


@app.post("/workflows/{kind}/send")
def workflow_send(
    kind: str,
    payload: ChatSendRequest,
    request: Request,
    entity_id: Optional[str] = Query(None, alias="entityId"),
) -> Dict[str, Any]:
    """Send a chat message to the advisor within an open workflow."""

    message = (payload.message or "").strip()
    if not message:
        return _json_error(status.HTTP_400_BAD_REQUEST, "Message must not be empty.")

    workflow = _get_workflow(request, kind, entity_id)
    reply = workflow.send(message)
    logger.info("Workflow %s message processed for session %s", kind, _get_session_id(request))
    return {"reply": _dump(reply), "workflow": workflow.snapshot()}


@app.post("/workflows/{kind}/select")
def workflow_select(
    kind: str,
    payload: SelectRequest,
    request: Request,
    entity_id: Optional[str] = Query(None, alias="entityId"),
) -> Dict[str, Any]:
    workflow = _get_workflow(request, kind, entity_id)
    workflow.select(payload.group, payload.key, payload.selected)
    return workflow.snapshot()


@app.post("/workflows/{kind}/map")
def workflow_map(
    kind: str,
    payload: MapRequest,
    request: Request,
    entity_id: Optional[str] = Query(None, alias="entityId"),
) -> Dict[str, Any]:
    workflow = _get_workflow(request, kind, entity_id)
    workflow.map_task_to_kr(payload.task_index, payload.kr_id)
    return workflow.snapshot()


@app.post("/workflows/{kind}/resume")
def workflow_resume(kind: str, request: Request, entity_id: Optional[str] = Query(None, alias="entityId")) -> Dict[str, Any]:
    workflow = _get_workflow(request, kind, entity_id)
    workflow.resume()
    return workflow.snapshot()


@app.post("/workflows/{kind}/reset")
def workflow_reset(kind: str, request: Request, entity_id: Optional[str] = Query(None, alias="entityId")) -> Dict[str, Any]:
    workflow = _get_workflow(request, kind, entity_id)
    workflow.reset()
    return workflow.snapshot()


@app.post("/workflows/{kind}/commit")
def workflow_commit(kind: str, request: Request, entity_id: Optional[str] = Query(None, alias="entityId")) -> Dict[str, Any]:
    workflow = _get_workflow(request, kind, entity_id)
    report = workflow.commit()
    return {"report": report.to_dict(), "workflow": workflow.snapshot()}


# ---------------------------------------------------------------------------
# One-shot generation and suggestion reviews
# ---------------------------------------------------------------------------


@app.post("/projects/{project_id}/okr/generate")
def generate_okr(project_id: str, request: Request) -> Dict[str, Any]:
    """Generate an OKR; applied directly when the project has none yet."""

    state = get_state()
    project = state.get_project(project_id)
    generated = generation.generate_okr(project, state.okr_for_project(project_id), state.tasks_for_project(project_id))
    report, review = generation.apply_generated_okr(state, project_id, generated)
    if review is None:
        return {"applied": True, "report": report.to_dict()}

    session_store.open_entry(_get_session_id(request), review.kind, project_id, lambda: review)
    return {"applied": False, "review": review.snapshot()}


@app.post("/projects/{project_id}/insight")
def project_insight(project_id: str, request: Request) -> Dict[str, Any]:
    state = get_state()
    project = state.get_project(project_id)
    insight = generation.generate_project_insight(
        project, state.tasks_for_project(project_id), state.okr_for_project(project_id)
    )
    review = session_store.open_entry(
        _get_session_id(request),
        generation.InsightReview.kind,
        project_id,
        lambda: generation.InsightReview(state, project_id, insight),
    )
    return review.snapshot()


def _get_review(request: Request, kind: str, project_id: str):
    if kind not in REVIEW_TYPES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown review kind: {kind}")
    review = session_store.get_entry(_get_session_id(request), kind, project_id)
    if review is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No pending {kind} review.")
    return review


@app.get("/reviews/{kind}/{project_id}")
def read_review(kind: str, project_id: str, request: Request) -> Dict[str, Any]:
    return _get_review(request, kind, project_id).snapshot()


@app.post("/reviews/{kind}/{project_id}/select")
def review_select(kind: str, project_id: str, payload: SelectRequest, request: Request) -> Dict[str, Any]:
    review = _get_review(request, kind, project_id)
    review.select(payload.group, payload.key, payload.selected)
    return review.snapshot()


@app.post("/reviews/{kind}/{project_id}/map")
def review_map(kind: str, project_id: str, payload: MapRequest, request: Request) -> Dict[str, Any]:
    review = _get_review(request, kind, project_id)
    review.map_task_to_kr(payload.task_index, payload.kr_id)
    return review.snapshot()


@app.post("/reviews/{kind}/{project_id}/apply")
def review_apply(kind: str, project_id: str, request: Request) -> Dict[str, Any]:
    review = _get_review(request, kind, project_id)
    report = review.apply()
    session_store.close_entry(_get_session_id(request), kind, project_id)
    return {"report": report.to_dict()}


@app.post("/report/analyze")
def analyze_report(payload: ReportAnalyzeRequest) -> Dict[str, Any]:
    text = payload.report.strip()
    if not text:
        return _json_error(status.HTTP_400_BAD_REQUEST, "Report must not be empty.")
    names = [project.name for project in get_state().projects()]
    return _dump(generation.analyze_daily_report(text, names, payload.include_okr))


@app.post("/transcribe")
async def transcribe_audio(file: UploadFile = File(...)) -> JSONResponse:
    """Transcribe a recorded voice note into text."""

    data = await file.read()
    logger.debug("Read %s bytes of audio from %s", len(data), file.filename)
    if not data:
        return _json_error(status.HTTP_400_BAD_REQUEST, "Uploaded audio is empty.")
    if len(data) > MAX_AUDIO_SIZE:
        return _json_error(status.HTTP_400_BAD_REQUEST, "Audio too large. Limit is 10 MB.")

    text = await run_in_threadpool(generation.transcribe, data, file.content_type or "audio/webm")
    return JSONResponse(status_code=status.HTTP_200_OK, content={"text": text})


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def _current_export():
    state = get_state()
    return export.build_export(state.projects(), state.tasks(), state.okrs())


def _attachment(filename: str) -> Dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


@app.get("/export/json")
def export_json() -> Response:
    return Response(
        content=export.export_json(_current_export()),
        media_type="application/json",
        headers=_attachment(export.backup_filename("json")),
    )


@app.get("/export/csv")
def export_csv() -> Response:
    return Response(
        content=export.export_csv(_current_export()),
        media_type="text/csv; charset=utf-8",
        headers=_attachment(export.backup_filename("csv")),
    )


@app.post("/import")
async def import_backup(file: UploadFile = File(...)) -> JSONResponse:
    """Replace the in-memory collections with a JSON backup."""

    data = await file.read()
    if not data:
        return _json_error(status.HTTP_400_BAD_REQUEST, "Uploaded backup is empty.")
    if len(data) > MAX_BACKUP_SIZE:
        return _json_error(status.HTTP_400_BAD_REQUEST, "Backup too large. Limit is 5 MB.")

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:  # pragma: no cover - depends on user input
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unable to decode backup as UTF-8.") from exc

    backup = ingest.load_backup_text(text)
    state = get_state()
    ingest.restore(state, backup)
    logger.info("Imported backup %s", file.filename)
    return JSONResponse(status_code=status.HTTP_200_OK, content=state.stats())
