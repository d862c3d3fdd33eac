from __future__ import annotations

import json
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

from fastapi import HTTPException
from sqlalchemy import or_
from sqlmodel import Session, select

from .changelog import ChangeLogRecorder
from .database import escape_like, transaction
from .duplicates import DuplicateDetector, DuplicateReport
from .errors import InvalidPolicy, MissingActor, StorageError, UploadTimeout
from .identifiers import BULK_RECORD_PREFIX, SINGLE_RECORD_PREFIX, IdentifierAllocator
from .logging_config import get_logger
from .models import ChangeLogEntry, CustomerRecord, OperationLog, UploadStaging
from .resolution import DuplicatePolicy, DuplicateResolver, PlanAction, ResolutionPlan, coerce_policy
from .schemas import (
    ChangeLogEntryRead,
    CustomerRecordRead,
    DuplicateReportRead,
    FieldErrorRead,
    MutationResponse,
    OperationLogRead,
    UploadConfirmation,
    UploadRowIssue,
    UploadSummary,
)
from .timezone_utils import now_local_naive
from .validation import FieldError, RecordValidator

CREATE_RETRY_ATTEMPTS = int(os.getenv("CREATE_RETRY_ATTEMPTS", "5"))
RETRY_BACKOFF_SECONDS = 0.05
UPLOAD_STAGING_TTL_MINUTES = int(os.getenv("UPLOAD_STAGING_TTL_MINUTES", "60"))
UPLOAD_CONFIRM_TIMEOUT_SECONDS = float(os.getenv("UPLOAD_CONFIRM_TIMEOUT_SECONDS", "30"))

# fields an agent may patch directly by phone number
UPDATABLE_FIELDS = (
    "calling_code",
    "field_code",
    "disposition",
    "calling_feedback",
    "field_feedback",
    "comment",
    "scheduled_at",
    "new_track_no",
    "paid_amt",
    "paid_date",
    "settl_amt",
    "shots",
)

SEARCH_LIMIT_MAX = 500

SEARCH_FIELDS = (
    "c_unique_id",
    "c_name",
    "mobile",
    "email",
    "crn",
    "loan_card_no",
    "agent_name",
    "bank_name",
    "product",
    "disposition",
    "comment",
)

STATUS_CREATED = "created"
STATUS_UPDATED = "updated"
STATUS_RESOLVED = "resolved"
STATUS_UNCHANGED = "unchanged"
STATUS_SKIPPED = "skipped"
STATUS_DUPLICATE = "duplicate"
STATUS_INVALID = "invalid"

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class Reconciler:
    """The engine components one mutation runs through."""

    validator: RecordValidator = field(default_factory=RecordValidator)
    detector: DuplicateDetector = field(default_factory=DuplicateDetector)
    resolver: DuplicateResolver = field(default_factory=DuplicateResolver)
    recorder: ChangeLogRecorder = field(default_factory=ChangeLogRecorder)
    allocator: IdentifierAllocator = field(default_factory=IdentifierAllocator)


DEFAULT_RECONCILER = Reconciler()


@dataclass
class MutationOutcome:
    status: str
    record: Optional[CustomerRecord] = None
    changes: List[ChangeLogEntry] = field(default_factory=list)
    report: DuplicateReport = field(default_factory=DuplicateReport)
    errors: List[FieldError] = field(default_factory=list)
    written: int = 0


def _require_actor(actor: Optional[str], operation: str) -> str:
    if actor is None or not str(actor).strip():
        raise MissingActor(operation)
    return str(actor).strip()


def _with_retry(operation: str, work: Callable[[], T], attempts: int = CREATE_RETRY_ATTEMPTS) -> T:
    """Re-run a whole unit of work while it fails with a retryable storage error."""
    attempt = 1
    while True:
        try:
            return work()
        except StorageError as exc:
            if not exc.retryable or attempt >= attempts:
                raise
            logger.warning("unit_of_work_retry", operation=operation, attempt=attempt, detail=exc.detail)
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)
            attempt += 1


def snapshot(record: CustomerRecord, fields: Iterable[str]) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in fields}


def _log_operation(
    session: Session,
    *,
    entity_type: str,
    entity_id: Optional[int],
    action: str,
    description: str,
    actor: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> OperationLog:
    log = OperationLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        actor=actor,
        metadata_json=json.dumps(metadata, ensure_ascii=False, default=str) if metadata else None,
    )
    session.add(log)
    session.flush()
    return log


def _decode_metadata(metadata_json: Optional[str]) -> Optional[dict]:
    if not metadata_json:
        return None
    try:
        value = json.loads(metadata_json)
        return value if isinstance(value, dict) else None
    except json.JSONDecodeError:
        return None


def _insert_record(session: Session, values: Mapping[str, Any], *, identifier: str, actor: str) -> CustomerRecord:
    now = now_local_naive()
    record = CustomerRecord(**values, c_unique_id=identifier, created_by=actor, created_at=now, last_updated=now)
    session.add(record)
    session.flush()
    return record


def _delete_records(session: Session, record_ids: Sequence[int]) -> List[str]:
    removed: List[str] = []
    for record_id in record_ids:
        record = session.get(CustomerRecord, record_id)
        if record is None:
            continue
        removed.append(record.c_unique_id)
        # change log rows go with the record
        session.delete(record)
    session.flush()
    return removed


def _apply_plan(
    session: Session,
    plan: ResolutionPlan,
    *,
    prefix: str,
    actor: str,
    reconciler: Reconciler,
) -> MutationOutcome:
    if plan.action is PlanAction.NOOP:
        logger.info("duplicate_skipped", fields=plan.report.fields, record_ids=plan.report.record_ids)
        return MutationOutcome(status=STATUS_SKIPPED, report=plan.report)
    if plan.action is PlanAction.DEFER:
        return MutationOutcome(status=STATUS_DUPLICATE, report=plan.report)

    removed: List[str] = []
    if plan.action is PlanAction.REPLACE:
        removed = _delete_records(session, plan.delete_record_ids)
        identifier = plan.reuse_identifier
    else:
        identifier = reconciler.allocator.allocate(session, prefix)
    record = _insert_record(session, plan.values, identifier=identifier, actor=actor)

    if removed:
        _log_operation(
            session,
            entity_type="customer_record",
            entity_id=record.id,
            action="replace",
            description=f"Replaced {', '.join(removed)} with {record.c_unique_id}",
            actor=actor,
            metadata={"removed": removed, "fields": plan.report.fields},
        )
    elif plan.suffixed_fields:
        _log_operation(
            session,
            entity_type="customer_record",
            entity_id=record.id,
            action="append",
            description=f"Created {record.c_unique_id} with suffixed {', '.join(plan.suffixed_fields)}",
            actor=actor,
            metadata={"suffixed": sorted(plan.suffixed_fields), "conflicts": plan.report.record_ids},
        )
    else:
        _log_operation(
            session,
            entity_type="customer_record",
            entity_id=record.id,
            action="create",
            description=f"Created {record.c_unique_id}",
            actor=actor,
        )
    return MutationOutcome(status=STATUS_CREATED, record=record, report=plan.report, written=1)


def create_record(
    session: Session,
    fields: Mapping[str, Any],
    *,
    actor: Optional[str],
    policy: Any = DuplicatePolicy.PROMPT,
    prefix: str = SINGLE_RECORD_PREFIX,
    reconciler: Reconciler = DEFAULT_RECONCILER,
) -> MutationOutcome:
    username = _require_actor(actor, "create")
    chosen = coerce_policy(policy)
    result = reconciler.validator.validate(fields)
    if not result.ok:
        return MutationOutcome(status=STATUS_INVALID, errors=result.errors)

    def work() -> MutationOutcome:
        with transaction(session):
            report = reconciler.detector.detect(session, result.values)
            plan = reconciler.resolver.resolve(session, chosen, result.values, report)
            outcome = _apply_plan(session, plan, prefix=prefix, actor=username, reconciler=reconciler)
        if outcome.record is not None:
            session.refresh(outcome.record)
            logger.info(
                "record_created",
                record_id=outcome.record.id,
                c_unique_id=outcome.record.c_unique_id,
                policy=chosen.value,
                actor=username,
            )
        return outcome

    return _with_retry("create", work)


def update_record(
    session: Session,
    record_id: int,
    fields: Mapping[str, Any],
    *,
    actor: Optional[str],
    reconciler: Reconciler = DEFAULT_RECONCILER,
) -> MutationOutcome:
    """Apply submitted fields to a record and audit every changed one.

    Only identity values that actually change are checked for duplicates, so
    a record that already shares a value keeps accepting unrelated edits.
    """
    username = _require_actor(actor, "update")
    result = reconciler.validator.validate(fields, partial=True)
    if not result.ok:
        return MutationOutcome(status=STATUS_INVALID, errors=result.errors)

    with transaction(session):
        record = get_record(session, record_id)
        before = snapshot(record, reconciler.recorder.fields)
        changed_identity = {
            name: value
            for name, value in result.values.items()
            if name in reconciler.detector.identity_fields and value != before.get(name)
        }
        report = reconciler.detector.detect(session, changed_identity, exclude_record_id=record.id)
        if report.has_duplicates:
            return MutationOutcome(status=STATUS_DUPLICATE, record=record, report=report)

        for name, value in result.values.items():
            setattr(record, name, value)
        record.last_updated = now_local_naive()
        session.add(record)
        session.flush()
        changes = reconciler.recorder.record_changes(
            session, record.id, record.c_unique_id, before, result.values, username
        )
    session.refresh(record)
    logger.info("record_updated", record_id=record.id, changed=[entry.field for entry in changes], actor=username)
    return MutationOutcome(status=STATUS_UPDATED, record=record, changes=changes, written=len(changes))


def resolve_duplicate(
    session: Session,
    *,
    policy: Any,
    actor: Optional[str],
    candidate: Optional[Mapping[str, Any]] = None,
    record_id: Optional[int] = None,
    reconciler: Reconciler = DEFAULT_RECONCILER,
) -> MutationOutcome:
    """Settle a collision for a new candidate or for an already stored record.

    For a stored record, ``append`` suffixes that record's own colliding values
    and ``replace`` removes the other records, keeping this one and its
    identifier.
    """
    if (candidate is None) == (record_id is None):
        raise HTTPException(status_code=400, detail="Provide exactly one of candidate or record_id")
    if candidate is not None:
        return create_record(session, candidate, actor=actor, policy=policy, reconciler=reconciler)

    username = _require_actor(actor, "resolve")
    chosen = coerce_policy(policy)
    with transaction(session):
        record = get_record(session, record_id)
        current = snapshot(record, reconciler.recorder.fields)
        report = reconciler.detector.detect(session, current, exclude_record_id=record.id)
        if not report.has_duplicates:
            return MutationOutcome(status=STATUS_UNCHANGED, record=record, report=report)
        plan = reconciler.resolver.resolve(session, chosen, current, report)
        if plan.action is PlanAction.NOOP:
            return MutationOutcome(status=STATUS_SKIPPED, record=record, report=report)
        if plan.action is PlanAction.DEFER:
            return MutationOutcome(status=STATUS_DUPLICATE, record=record, report=report)

        changes: List[ChangeLogEntry] = []
        if plan.action is PlanAction.REPLACE:
            removed = _delete_records(session, plan.delete_record_ids)
            _log_operation(
                session,
                entity_type="customer_record",
                entity_id=record.id,
                action="replace",
                description=f"Kept {record.c_unique_id}, removed {', '.join(removed)}",
                actor=username,
                metadata={"removed": removed, "fields": report.fields},
            )
            written = len(removed)
        else:
            for name, value in plan.suffixed_fields.items():
                setattr(record, name, value)
            record.last_updated = now_local_naive()
            session.add(record)
            session.flush()
            changes = reconciler.recorder.record_changes(
                session, record.id, record.c_unique_id, current, plan.suffixed_fields, username
            )
            written = len(changes)
    session.refresh(record)
    logger.info("duplicate_resolved", record_id=record.id, policy=chosen.value, written=written, actor=username)
    return MutationOutcome(status=STATUS_RESOLVED, record=record, changes=changes, report=report, written=written)


def check_duplicates(
    session: Session,
    fields: Mapping[str, Any],
    *,
    exclude_record_id: Optional[int] = None,
    reconciler: Reconciler = DEFAULT_RECONCILER,
) -> DuplicateReport:
    # values that fail validation are left out rather than reported
    result = reconciler.validator.validate(fields, partial=True)
    return reconciler.detector.detect(session, result.values, exclude_record_id=exclude_record_id)


def get_record(session: Session, record_id: int) -> CustomerRecord:
    record = session.get(CustomerRecord, record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return record


def get_record_by_uid(session: Session, c_unique_id: str) -> CustomerRecord:
    normalized = (c_unique_id or "").strip().upper()
    if not normalized:
        raise HTTPException(status_code=400, detail="c_unique_id is required")
    record = session.exec(select(CustomerRecord).where(CustomerRecord.c_unique_id == normalized)).first()
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return record


def get_record_by_phone(session: Session, phone: str) -> CustomerRecord:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    if not digits:
        raise HTTPException(status_code=400, detail="phone is required")
    record = session.exec(
        select(CustomerRecord).where(CustomerRecord.mobile == digits).order_by(CustomerRecord.id.desc())
    ).first()
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return record


def search_records(
    session: Session,
    query: Optional[str] = None,
    *,
    limit: int = 50,
    agent_name: Optional[str] = None,
    updated_from: Optional[datetime] = None,
    updated_to: Optional[datetime] = None,
) -> List[CustomerRecord]:
    # interactive search is capped; export_records returns the full range
    safe_limit = max(1, min(limit, SEARCH_LIMIT_MAX))
    stmt = select(CustomerRecord)
    text = (query or "").strip()
    if text:
        pattern = f"%{escape_like(text)}%"
        stmt = stmt.where(
            or_(*(getattr(CustomerRecord, name).like(pattern, escape="\\") for name in SEARCH_FIELDS))
        )
    if agent_name:
        stmt = stmt.where(CustomerRecord.agent_name == agent_name)
    if updated_from is not None:
        stmt = stmt.where(CustomerRecord.last_updated >= updated_from)
    if updated_to is not None:
        stmt = stmt.where(CustomerRecord.last_updated <= updated_to)
    stmt = stmt.order_by(CustomerRecord.last_updated.desc(), CustomerRecord.id.desc()).limit(safe_limit)
    return session.exec(stmt).all()


def export_records(
    session: Session,
    updated_from: datetime,
    updated_to: datetime,
    *,
    agent_name: Optional[str] = None,
) -> List[CustomerRecord]:
    """Every record last touched inside the range; unlike ``search_records`` there is no row cap."""
    stmt = select(CustomerRecord).where(
        CustomerRecord.last_updated >= updated_from,
        CustomerRecord.last_updated <= updated_to,
    )
    if agent_name:
        stmt = stmt.where(CustomerRecord.agent_name == agent_name)
    stmt = stmt.order_by(CustomerRecord.last_updated.desc(), CustomerRecord.id.desc())
    records = session.exec(stmt).all()
    logger.info("records_exported", rows=len(records), agent_name=agent_name)
    return records


def list_history(session: Session, record_id: int) -> List[ChangeLogEntry]:
    get_record(session, record_id)
    stmt = (
        select(ChangeLogEntry)
        .where(ChangeLogEntry.record_id == record_id)
        .order_by(ChangeLogEntry.changed_at, ChangeLogEntry.id)
    )
    return session.exec(stmt).all()


def list_reminders(
    session: Session,
    *,
    within_minutes: int = 15,
    agent_name: Optional[str] = None,
) -> List[CustomerRecord]:
    now = now_local_naive()
    stmt = select(CustomerRecord).where(
        CustomerRecord.scheduled_at.is_not(None),
        CustomerRecord.scheduled_at >= now,
        CustomerRecord.scheduled_at <= now + timedelta(minutes=max(0, within_minutes)),
    )
    if agent_name:
        stmt = stmt.where(CustomerRecord.agent_name == agent_name)
    return session.exec(stmt.order_by(CustomerRecord.scheduled_at)).all()


def assign_record(
    session: Session,
    record_id: int,
    *,
    actor: Optional[str],
    agent_name: Optional[str] = None,
    tl_name: Optional[str] = None,
    team_id: Optional[int] = None,
    reconciler: Reconciler = DEFAULT_RECONCILER,
) -> MutationOutcome:
    updates = {
        key: value
        for key, value in (("agent_name", agent_name), ("tl_name", tl_name), ("team_id", team_id))
        if value is not None
    }
    if not updates:
        raise HTTPException(status_code=400, detail="No assignment given")
    return update_record(session, record_id, updates, actor=actor, reconciler=reconciler)


def patch_record_by_phone(
    session: Session,
    phone: str,
    fields: Mapping[str, Any],
    *,
    actor: Optional[str],
    reconciler: Reconciler = DEFAULT_RECONCILER,
) -> MutationOutcome:
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    rejected = sorted(set(fields) - set(UPDATABLE_FIELDS))
    if rejected:
        raise HTTPException(status_code=400, detail=f"Fields cannot be updated by phone: {', '.join(rejected)}")
    record = get_record_by_phone(session, phone)
    return update_record(session, record.id, fields, actor=actor, reconciler=reconciler)


def delete_record(session: Session, record_id: int, *, actor: Optional[str]) -> CustomerRecordRead:
    username = _require_actor(actor, "delete")
    with transaction(session):
        record = get_record(session, record_id)
        payload = to_record_read(record)
        session.delete(record)
        _log_operation(
            session,
            entity_type="customer_record",
            entity_id=record_id,
            action="delete",
            description=f"Deleted {payload.c_unique_id}",
            actor=username,
            metadata={"c_unique_id": payload.c_unique_id},
        )
    logger.info("record_deleted", record_id=record_id, c_unique_id=payload.c_unique_id, actor=username)
    return payload


def map_upload_row(row: Mapping[str, Any], header_mapping: Mapping[str, str]) -> Dict[str, Any]:
    """Rename file headers to field names; without a mapping headers are field names."""
    if not header_mapping:
        return dict(row)
    return {name: row[header] for name, header in header_mapping.items() if header in row}


def purge_expired_uploads(session: Session, *, now: Optional[datetime] = None) -> int:
    cutoff = now or now_local_naive()
    expired = session.exec(select(UploadStaging).where(UploadStaging.expires_at <= cutoff)).all()
    for staging in expired:
        session.delete(staging)
    if expired:
        session.flush()
        logger.info("upload_staging_purged", count=len(expired))
    return len(expired)


def stage_upload(
    session: Session,
    rows: Sequence[Mapping[str, Any]],
    header_mapping: Mapping[str, str],
    *,
    actor: Optional[str],
    reconciler: Reconciler = DEFAULT_RECONCILER,
) -> UploadSummary:
    """Validate and duplicate-check a batch, then park it for confirmation."""
    username = _require_actor(actor, "upload")
    mapped = [map_upload_row(row, header_mapping) for row in rows]
    invalid: List[UploadRowIssue] = []
    duplicates: List[UploadRowIssue] = []
    batch_duplicates: List[UploadRowIssue] = []
    first_seen: Dict[tuple, int] = {}

    with transaction(session):
        purge_expired_uploads(session)
        for row_number, raw in enumerate(mapped, start=1):
            result = reconciler.validator.validate(raw)
            if not result.ok:
                invalid.append(UploadRowIssue(row=row_number, messages=result.messages()))
                continue
            report = reconciler.detector.detect(session, result.values)
            if report.has_duplicates:
                duplicates.append(UploadRowIssue(row=row_number, messages=report.messages()))
            for name, value in reconciler.detector.identity_values(result.values).items():
                key = (name, value)
                if key in first_seen:
                    batch_duplicates.append(
                        UploadRowIssue(row=row_number, field=name, value=value, first_row=first_seen[key])
                    )
                else:
                    first_seen[key] = row_number

        now = now_local_naive()
        staging = UploadStaging(
            upload_id=uuid.uuid4().hex,
            created_by=username,
            payload_json=json.dumps(mapped, ensure_ascii=False, default=str),
            record_count=len(mapped),
            created_at=now,
            expires_at=now + timedelta(minutes=UPLOAD_STAGING_TTL_MINUTES),
        )
        session.add(staging)
        upload_id = staging.upload_id
        expires_at = staging.expires_at

    logger.info(
        "upload_staged",
        upload_id=upload_id,
        rows=len(mapped),
        invalid=len(invalid),
        duplicates=len(duplicates),
        batch_duplicates=len(batch_duplicates),
        actor=username,
    )
    return UploadSummary(
        upload_id=upload_id,
        total_rows=len(mapped),
        valid_rows=len(mapped) - len(invalid),
        invalid_rows=invalid,
        duplicates=duplicates,
        batch_duplicates=batch_duplicates,
        expires_at=expires_at,
    )


def confirm_upload(
    session: Session,
    upload_id: str,
    *,
    actor: Optional[str],
    proceed: bool = True,
    policy: Any = DuplicatePolicy.SKIP,
    timeout_seconds: float = UPLOAD_CONFIRM_TIMEOUT_SECONDS,
    clock: Callable[[], float] = time.monotonic,
    reconciler: Reconciler = DEFAULT_RECONCILER,
) -> UploadConfirmation:
    """Insert a staged batch as one all-or-nothing unit of work.

    Rows still failing validation are counted and left out. Past the deadline
    the whole batch is rolled back with ``UploadTimeout`` and the staged upload
    stays available for another attempt.
    """
    username = _require_actor(actor, "upload confirmation")
    chosen = coerce_policy(policy)
    if chosen is DuplicatePolicy.PROMPT:
        # nobody is left to answer a prompt halfway through a batch
        raise InvalidPolicy(policy)

    def load(now: datetime) -> UploadStaging:
        staging = session.get(UploadStaging, upload_id)
        if staging is None or staging.expires_at <= now:
            raise HTTPException(status_code=404, detail="Upload not found or expired")
        return staging

    if not proceed:
        with transaction(session):
            session.delete(load(now_local_naive()))
        logger.info("upload_discarded", upload_id=upload_id, actor=username)
        return UploadConfirmation(upload_id=upload_id, status="cancelled")

    def work() -> UploadConfirmation:
        summary = UploadConfirmation(upload_id=upload_id, status="committed")
        with transaction(session):
            staging = load(now_local_naive())
            rows = json.loads(staging.payload_json)
            deadline = clock() + timeout_seconds
            for processed, raw in enumerate(rows):
                if clock() > deadline:
                    raise UploadTimeout(upload_id, processed, len(rows))
                result = reconciler.validator.validate(raw)
                if not result.ok:
                    summary.invalid += 1
                    continue
                report = reconciler.detector.detect(session, result.values)
                plan = reconciler.resolver.resolve(session, chosen, result.values, report)
                outcome = _apply_plan(session, plan, prefix=BULK_RECORD_PREFIX, actor=username, reconciler=reconciler)
                if outcome.record is None:
                    summary.skipped += 1
                    continue
                # replace can hand an identifier issued earlier in this batch to a later row
                if outcome.record.c_unique_id not in summary.created_identifiers:
                    summary.created_identifiers.append(outcome.record.c_unique_id)
                if plan.action is PlanAction.REPLACE:
                    summary.replaced += 1
                elif plan.suffixed_fields:
                    summary.appended += 1
                else:
                    summary.inserted += 1
            session.delete(staging)
            _log_operation(
                session,
                entity_type="upload",
                entity_id=None,
                action="bulk_confirm",
                description=f"Confirmed upload {upload_id}: {len(summary.created_identifiers)} records",
                actor=username,
                metadata={
                    "upload_id": upload_id,
                    "policy": chosen.value,
                    "created": len(summary.created_identifiers),
                    "skipped": summary.skipped,
                    "invalid": summary.invalid,
                },
            )
            purge_expired_uploads(session)
        return summary

    try:
        confirmation = _with_retry("confirm_upload", work)
    except UploadTimeout as exc:
        logger.warning("upload_confirm_timeout", upload_id=upload_id, processed=exc.processed, total=exc.total)
        raise
    logger.info(
        "upload_confirmed",
        upload_id=upload_id,
        created=len(confirmation.created_identifiers),
        skipped=confirmation.skipped,
        invalid=confirmation.invalid,
        actor=username,
    )
    return confirmation


def list_operation_logs(
    session: Session,
    limit: int = 200,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
) -> List[OperationLog]:
    safe_limit = max(1, min(limit, 500))
    stmt = select(OperationLog)
    if entity_type:
        stmt = stmt.where(OperationLog.entity_type == entity_type)
    if entity_id is not None:
        stmt = stmt.where(OperationLog.entity_id == entity_id)
    if start_at is not None:
        stmt = stmt.where(OperationLog.created_at >= start_at)
    if end_at is not None:
        stmt = stmt.where(OperationLog.created_at <= end_at)
    stmt = stmt.order_by(OperationLog.created_at.desc(), OperationLog.id.desc()).limit(safe_limit)
    return session.exec(stmt).all()


def to_record_read(record: CustomerRecord) -> CustomerRecordRead:
    return CustomerRecordRead.model_validate(record, from_attributes=True)


def to_change_read(entry: ChangeLogEntry) -> ChangeLogEntryRead:
    return ChangeLogEntryRead.model_validate(entry, from_attributes=True)


def to_report_read(report: DuplicateReport) -> DuplicateReportRead:
    return DuplicateReportRead.model_validate(report.as_dict())


def to_mutation_response(outcome: MutationOutcome) -> MutationResponse:
    return MutationResponse(
        status=outcome.status,
        written=outcome.written,
        record=to_record_read(outcome.record) if outcome.record is not None else None,
        changes=[to_change_read(entry) for entry in outcome.changes],
        report=to_report_read(outcome.report) if outcome.report.has_duplicates else None,
        errors=[FieldErrorRead(**error.as_dict()) for error in outcome.errors],
    )


def to_operation_log_read(log: OperationLog) -> OperationLogRead:
    return OperationLogRead(
        id=log.id,
        entity_type=log.entity_type,
        entity_id=log.entity_id,
        action=log.action,
        description=log.description,
        actor=log.actor,
        metadata=_decode_metadata(log.metadata_json),
        created_at=log.created_at,
    )
