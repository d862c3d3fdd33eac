from __future__ import annotations

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Generator, List, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session

from . import auth, crud
from .database import engine, init_db
from .errors import InvalidPolicy, MissingActor, ReconciliationError, StorageError, UploadTimeout
from .logging_config import get_logger, setup_logging
from .schemas import (
    AssignRequest,
    ChangeLogEntryRead,
    CheckDuplicatesRequest,
    CustomerRecordRead,
    DuplicateReportRead,
    MutationResponse,
    OperationLogRead,
    RecordCreateRequest,
    RecordUpdateRequest,
    RecordUpdateResponse,
    ResolveRequest,
    UploadConfirmation,
    UploadConfirmRequest,
    UploadStageRequest,
    UploadSummary,
)
from .timezone_utils import parse_range_value

TOKEN_URL = os.getenv("BACKEND_TOKEN_URL", "/auth/token")

logger = get_logger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=TOKEN_URL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    init_db()
    logger.info("application_started")
    yield


app = FastAPI(title="Collection CRM Backend", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ConnectionManager:
    def __init__(self) -> None:
        self.connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.connections:
            self.connections.remove(websocket)

    async def broadcast(self, message: Any) -> None:
        for websocket in list(self.connections):
            try:
                await websocket.send_json(message)
            except Exception as exc:
                logger.warning("event_delivery_failed", error=type(exc).__name__)
                self.disconnect(websocket)


manager = ConnectionManager()


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@dataclass
class ActorContext:
    session: Session
    actor: auth.Actor


def require_actor_context(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session),
) -> ActorContext:
    return ActorContext(session=session, actor=auth.actor_from_token(token))


def build_records_created_payload(identifiers: List[str], actor: auth.Actor) -> dict[str, Any]:
    return {"type": "records_created", "data": {"c_unique_ids": identifiers, "actor": actor.username}}


def _parse_range(raw: Optional[str], name: str, *, is_range_end: bool) -> Any:
    if not raw:
        return None
    try:
        return parse_range_value(raw, is_range_end=is_range_end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {name}") from exc


def _outcome_status(outcome: crud.MutationOutcome) -> Optional[int]:
    if outcome.status == crud.STATUS_INVALID:
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if outcome.status == crud.STATUS_DUPLICATE:
        return status.HTTP_409_CONFLICT
    return None


def _update_response(outcome: crud.MutationOutcome) -> Any:
    error_status = _outcome_status(outcome)
    if error_status is not None:
        return JSONResponse(status_code=error_status, content=jsonable_encoder(crud.to_mutation_response(outcome)))
    return RecordUpdateResponse(
        record=crud.to_record_read(outcome.record),
        changes=[crud.to_change_read(entry) for entry in outcome.changes],
    )


@app.exception_handler(InvalidPolicy)
async def invalid_policy_handler(request: Request, exc: InvalidPolicy) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(MissingActor)
async def missing_actor_handler(request: Request, exc: MissingActor) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": str(exc)})


@app.exception_handler(UploadTimeout)
async def upload_timeout_handler(request: Request, exc: UploadTimeout) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_504_GATEWAY_TIMEOUT, content={"detail": str(exc)})


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError) -> JSONResponse:
    detail = exc.detail if isinstance(exc, StorageError) else str(exc)
    logger.error("request_failed", path=request.url.path, error=type(exc).__name__, detail=detail)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "The operation failed and was rolled back"},
    )


@app.post("/api/records", response_model=MutationResponse, status_code=201)
def create_record_api(
    payload: RecordCreateRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    ctx: ActorContext = Depends(require_actor_context),
):
    outcome = crud.create_record(ctx.session, payload.fields, actor=ctx.actor.username, policy=payload.policy)
    error_status = _outcome_status(outcome)
    if error_status is not None:
        response.status_code = error_status
    elif outcome.record is None:
        response.status_code = status.HTTP_200_OK
    else:
        background_tasks.add_task(
            manager.broadcast, build_records_created_payload([outcome.record.c_unique_id], ctx.actor)
        )
    return crud.to_mutation_response(outcome)


@app.post("/api/records/check-duplicates", response_model=DuplicateReportRead)
def check_duplicates_api(payload: CheckDuplicatesRequest, ctx: ActorContext = Depends(require_actor_context)):
    report = crud.check_duplicates(ctx.session, payload.fields, exclude_record_id=payload.exclude_record_id)
    return crud.to_report_read(report)


@app.post("/api/records/resolve", response_model=MutationResponse)
def resolve_duplicate_api(
    payload: ResolveRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    ctx: ActorContext = Depends(require_actor_context),
):
    outcome = crud.resolve_duplicate(
        ctx.session,
        policy=payload.policy,
        actor=ctx.actor.username,
        candidate=payload.candidate,
        record_id=payload.record_id,
    )
    error_status = _outcome_status(outcome)
    if error_status is not None:
        response.status_code = error_status
    elif outcome.status == crud.STATUS_CREATED:
        response.status_code = status.HTTP_201_CREATED
        background_tasks.add_task(
            manager.broadcast, build_records_created_payload([outcome.record.c_unique_id], ctx.actor)
        )
    return crud.to_mutation_response(outcome)


@app.get("/api/records", response_model=List[CustomerRecordRead])
def search_records_api(
    q: Optional[str] = None,
    limit: int = 50,
    agent_name: Optional[str] = None,
    updated_from: Optional[str] = None,
    updated_to: Optional[str] = None,
    ctx: ActorContext = Depends(require_actor_context),
):
    start_at = _parse_range(updated_from, "updated_from", is_range_end=False)
    end_at = _parse_range(updated_to, "updated_to", is_range_end=True)
    if start_at and end_at and end_at < start_at:
        raise HTTPException(status_code=400, detail="updated_to must be after updated_from")
    records = crud.search_records(
        ctx.session,
        q,
        limit=limit,
        agent_name=agent_name,
        updated_from=start_at,
        updated_to=end_at,
    )
    return [crud.to_record_read(record) for record in records]


@app.get("/api/records/export", response_model=List[CustomerRecordRead])
def export_records_api(
    updated_from: str,
    updated_to: str,
    ctx: ActorContext = Depends(require_actor_context),
):
    start_at = _parse_range(updated_from, "updated_from", is_range_end=False)
    end_at = _parse_range(updated_to, "updated_to", is_range_end=True)
    if end_at < start_at:
        raise HTTPException(status_code=400, detail="updated_to must be after updated_from")
    # agents only export the records assigned to them
    agent_name = None if ctx.actor.sees_all_records else ctx.actor.username
    records = crud.export_records(ctx.session, start_at, end_at, agent_name=agent_name)
    return [crud.to_record_read(record) for record in records]


@app.get("/api/records/reminders", response_model=List[CustomerRecordRead])
def reminders_api(
    within_minutes: int = 15,
    agent_name: Optional[str] = None,
    ctx: ActorContext = Depends(require_actor_context),
):
    records = crud.list_reminders(ctx.session, within_minutes=within_minutes, agent_name=agent_name)
    return [crud.to_record_read(record) for record in records]


@app.get("/api/records/uid/{c_unique_id}", response_model=CustomerRecordRead)
def get_record_by_uid_api(c_unique_id: str, ctx: ActorContext = Depends(require_actor_context)):
    return crud.to_record_read(crud.get_record_by_uid(ctx.session, c_unique_id))


@app.get("/api/records/phone/{phone}", response_model=CustomerRecordRead)
def get_record_by_phone_api(phone: str, ctx: ActorContext = Depends(require_actor_context)):
    return crud.to_record_read(crud.get_record_by_phone(ctx.session, phone))


@app.patch("/api/records/phone/{phone}", response_model=RecordUpdateResponse)
def patch_record_by_phone_api(
    phone: str,
    payload: RecordUpdateRequest,
    ctx: ActorContext = Depends(require_actor_context),
):
    outcome = crud.patch_record_by_phone(ctx.session, phone, payload.fields, actor=ctx.actor.username)
    return _update_response(outcome)


@app.get("/api/records/{record_id}", response_model=CustomerRecordRead)
def get_record_api(record_id: int, ctx: ActorContext = Depends(require_actor_context)):
    return crud.to_record_read(crud.get_record(ctx.session, record_id))


@app.put("/api/records/{record_id}", response_model=RecordUpdateResponse)
def update_record_api(
    record_id: int,
    payload: RecordUpdateRequest,
    ctx: ActorContext = Depends(require_actor_context),
):
    outcome = crud.update_record(ctx.session, record_id, payload.fields, actor=ctx.actor.username)
    return _update_response(outcome)


@app.delete("/api/records/{record_id}", response_model=CustomerRecordRead)
def delete_record_api(record_id: int, ctx: ActorContext = Depends(require_actor_context)):
    return crud.delete_record(ctx.session, record_id, actor=ctx.actor.username)


@app.get("/api/records/{record_id}/history", response_model=List[ChangeLogEntryRead])
def record_history_api(record_id: int, ctx: ActorContext = Depends(require_actor_context)):
    return [crud.to_change_read(entry) for entry in crud.list_history(ctx.session, record_id)]


@app.post("/api/records/{record_id}/assign", response_model=RecordUpdateResponse)
def assign_record_api(
    record_id: int,
    payload: AssignRequest,
    ctx: ActorContext = Depends(require_actor_context),
):
    outcome = crud.assign_record(
        ctx.session,
        record_id,
        actor=ctx.actor.username,
        agent_name=payload.agent_name,
        tl_name=payload.tl_name,
        team_id=payload.team_id,
    )
    return _update_response(outcome)


@app.post("/api/uploads", response_model=UploadSummary, status_code=201)
def stage_upload_api(payload: UploadStageRequest, ctx: ActorContext = Depends(require_actor_context)):
    return crud.stage_upload(ctx.session, payload.rows, payload.header_mapping, actor=ctx.actor.username)


@app.post("/api/uploads/{upload_id}/confirm", response_model=UploadConfirmation)
def confirm_upload_api(
    upload_id: str,
    payload: UploadConfirmRequest,
    background_tasks: BackgroundTasks,
    ctx: ActorContext = Depends(require_actor_context),
):
    confirmation = crud.confirm_upload(
        ctx.session,
        upload_id,
        actor=ctx.actor.username,
        proceed=payload.proceed,
        policy=payload.policy,
    )
    if confirmation.created_identifiers:
        background_tasks.add_task(
            manager.broadcast, build_records_created_payload(confirmation.created_identifiers, ctx.actor)
        )
    return confirmation


@app.get("/api/operation-logs", response_model=List[OperationLogRead])
def operation_logs_api(
    limit: int = 200,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    ctx: ActorContext = Depends(require_actor_context),
):
    start_at = _parse_range(start_date, "start_date", is_range_end=False)
    end_at = _parse_range(end_date, "end_date", is_range_end=True)
    if start_at and end_at and end_at < start_at:
        raise HTTPException(status_code=400, detail="end_date must be after start_date")
    logs = crud.list_operation_logs(
        ctx.session,
        limit=limit,
        entity_type=entity_type,
        entity_id=entity_id,
        start_at=start_at,
        end_at=end_at,
    )
    return [crud.to_operation_log_read(log) for log in logs]


@app.websocket("/ws/events")
async def events_ws(websocket: WebSocket, token: Optional[str] = None):
    try:
        actor = auth.actor_from_token(token or "")
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await manager.connect(websocket)
    logger.info("event_subscriber_connected", actor=actor.username)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
