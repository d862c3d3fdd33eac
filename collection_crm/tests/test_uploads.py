import itertools
from datetime import timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import func
from sqlmodel import select

from collection_crm import crud
from collection_crm.errors import InvalidPolicy, UploadTimeout
from collection_crm.models import CustomerRecord, OperationLog, UploadStaging
from collection_crm.timezone_utils import now_local_naive

HEADERS = {"mobile": "Phone", "c_name": "Customer Name", "crn": "CRN"}


def _rows():
    return [
        {"Phone": "9876543210", "Customer Name": "Already Stored", "CRN": "C-1"},
        {"Phone": "9000000001", "Customer Name": "Fresh", "CRN": "C-2"},
        {"Phone": "9000000001", "Customer Name": "Fresh Twin", "CRN": "C-3"},
        {"Phone": "1234567890123", "Customer Name": "Too Long"},
    ]


def _count(session, model) -> int:
    return session.exec(select(func.count()).select_from(model)).one()


def test_stage_reports_storage_batch_and_invalid_rows(session, make_record):
    make_record("DF_1", mobile="9876543210", c_name="Asha Rao")
    summary = crud.stage_upload(session, _rows(), HEADERS, actor="uploader")

    assert summary.total_rows == 4
    assert summary.valid_rows == 3
    assert [issue.row for issue in summary.invalid_rows] == [4]
    assert "cannot exceed 12 digits" in summary.invalid_rows[0].messages[0]
    assert [issue.row for issue in summary.duplicates] == [1]
    assert "Asha Rao (DF_1)" in summary.duplicates[0].messages[0]
    assert [(issue.row, issue.field, issue.first_row) for issue in summary.batch_duplicates] == [(3, "mobile", 2)]

    staging = session.get(UploadStaging, summary.upload_id)
    assert staging is not None
    assert staging.record_count == 4
    assert staging.created_by == "uploader"
    assert _count(session, CustomerRecord) == 1


def test_confirm_with_skip_inserts_all_or_nothing(session, make_record):
    make_record("DF_1", mobile="9876543210")
    summary = crud.stage_upload(session, _rows(), HEADERS, actor="uploader")

    confirmation = crud.confirm_upload(session, summary.upload_id, actor="uploader", policy="skip")
    assert confirmation.status == "committed"
    assert confirmation.inserted == 1
    assert confirmation.skipped == 2
    assert confirmation.invalid == 1
    assert confirmation.created_identifiers == ["FF_1"]

    assert session.get(UploadStaging, summary.upload_id) is None
    assert "bulk_confirm" in session.exec(select(OperationLog.action)).all()
    with pytest.raises(HTTPException) as excinfo:
        crud.confirm_upload(session, summary.upload_id, actor="uploader")
    assert excinfo.value.status_code == 404


def test_confirm_with_append_keeps_every_row(session, make_record):
    make_record("DF_1", mobile="9876543210")
    summary = crud.stage_upload(session, _rows()[:3], HEADERS, actor="uploader")
    confirmation = crud.confirm_upload(session, summary.upload_id, actor="uploader", policy="append")
    assert confirmation.inserted == 1
    assert confirmation.appended == 2
    mobiles = set(session.exec(select(CustomerRecord.mobile)).all())
    assert {"9876543210", "9876543210__1", "9000000001", "9000000001__1"} == mobiles


def test_confirm_rejects_prompt_policy(session):
    summary = crud.stage_upload(session, _rows()[1:2], HEADERS, actor="uploader")
    with pytest.raises(InvalidPolicy):
        crud.confirm_upload(session, summary.upload_id, actor="uploader", policy="prompt")
    assert session.get(UploadStaging, summary.upload_id) is not None


def test_confirm_timeout_rolls_back_whole_batch(session):
    rows = [{"Phone": f"90000000{index:02d}", "Customer Name": f"Row {index}"} for index in range(5)]
    summary = crud.stage_upload(session, rows, HEADERS, actor="uploader")
    ticks = itertools.count()

    with pytest.raises(UploadTimeout) as excinfo:
        crud.confirm_upload(
            session,
            summary.upload_id,
            actor="uploader",
            timeout_seconds=2.5,
            clock=lambda: next(ticks),
        )
    assert excinfo.value.processed == 2
    assert excinfo.value.total == 5
    assert _count(session, CustomerRecord) == 0
    assert session.get(UploadStaging, summary.upload_id) is not None

    confirmation = crud.confirm_upload(session, summary.upload_id, actor="uploader")
    assert confirmation.inserted == 5
    assert confirmation.created_identifiers[0] == "FF_1"


def test_cancelled_upload_is_discarded(session):
    summary = crud.stage_upload(session, _rows()[1:2], HEADERS, actor="uploader")
    cancelled = crud.confirm_upload(session, summary.upload_id, actor="uploader", proceed=False)
    assert cancelled.status == "cancelled"
    assert session.get(UploadStaging, summary.upload_id) is None
    assert _count(session, CustomerRecord) == 0


def test_expired_uploads_cannot_be_confirmed_and_are_purged(session):
    summary = crud.stage_upload(session, _rows()[1:2], HEADERS, actor="uploader")
    staging = session.get(UploadStaging, summary.upload_id)
    staging.expires_at = now_local_naive() - timedelta(minutes=1)
    session.add(staging)
    session.commit()

    with pytest.raises(HTTPException) as excinfo:
        crud.confirm_upload(session, summary.upload_id, actor="uploader")
    assert excinfo.value.status_code == 404

    crud.stage_upload(session, _rows()[1:2], HEADERS, actor="uploader")
    assert session.get(UploadStaging, summary.upload_id) is None
    assert _count(session, UploadStaging) == 1


def test_rows_without_mapping_use_field_names(session):
    summary = crud.stage_upload(session, [{"mobile": "9000000001", "c_name": "Direct"}], {}, actor="uploader")
    assert summary.valid_rows == 1
    confirmation = crud.confirm_upload(session, summary.upload_id, actor="uploader")
    assert confirmation.created_identifiers == ["FF_1"]


def test_replace_within_batch_reports_each_identifier_once(session):
    rows = [
        {"Phone": "9000000001", "Customer Name": "First"},
        {"Phone": "9000000001", "Customer Name": "Corrected"},
    ]
    summary = crud.stage_upload(session, rows, HEADERS, actor="uploader")
    confirmation = crud.confirm_upload(session, summary.upload_id, actor="uploader", policy="replace")

    assert confirmation.inserted == 1
    assert confirmation.replaced == 1
    assert confirmation.created_identifiers == ["FF_1"]
    stored = session.exec(select(CustomerRecord)).all()
    assert [(record.c_unique_id, record.c_name) for record in stored] == [("FF_1", "Corrected")]
