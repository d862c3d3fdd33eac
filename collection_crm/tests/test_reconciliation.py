import warnings
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy import DateTime, func
from sqlalchemy.exc import IntegrityError, OperationalError, SADeprecationWarning
from sqlmodel import Session, SQLModel, select

from collection_crm import crud
from collection_crm.changelog import ChangeLogRecorder, diff_snapshots, stringify_log_value
from collection_crm.database import build_engine, transaction
from collection_crm.duplicates import DuplicateDetector
from collection_crm.errors import InvalidPolicy, MalformedIdentifier, MissingActor, StorageError
from collection_crm.identifiers import (
    IdentifierAllocator,
    highest_identifier,
    next_identifier,
    parse_identifier_number,
)
from collection_crm.models import ChangeLogEntry, CustomerRecord, IdentifierSequence, OperationLog, UploadStaging
from collection_crm.resolution import DuplicatePolicy, DuplicateResolver, PlanAction


def test_next_identifier_increments_numeric_suffix():
    assert next_identifier("DF", "DF_7") == "DF_8"
    assert next_identifier("DF", None) == "DF_1"
    assert next_identifier("DF", "") == "DF_1"
    # legacy prefixes still parse on the part after the first underscore
    assert next_identifier("DF", "OLD_41") == "DF_42"


@pytest.mark.parametrize("identifier", ["DF_x7", "DF7", "DF_", "DF_-3"])
def test_next_identifier_rejects_malformed_values(identifier):
    with pytest.raises(MalformedIdentifier):
        next_identifier("DF", identifier)


def test_highest_identifier_orders_numerically(session, make_record):
    for uid, phone in (("DF_9", "9000000009"), ("DF_10", "9000000010"), ("FF_99", "9000000099"), ("DF_2", "9000000002")):
        make_record(uid, mobile=phone)
    assert highest_identifier(session, "DF") == "DF_10"
    assert highest_identifier(session, "XX") is None


def test_allocator_seeds_from_stored_identifiers(session, make_record):
    make_record("DF_10", mobile="9000000010")
    allocator = IdentifierAllocator()
    with transaction(session):
        first = allocator.allocate(session, "DF")
        second = allocator.allocate(session, "DF")
    assert (first, second) == ("DF_11", "DF_12")
    sequence = session.get(IdentifierSequence, "DF")
    assert sequence.last_identifier == "DF_12"


def test_allocator_catches_up_with_records_written_around_it(session, make_record):
    first = crud.create_record(session, {"mobile": "9000000001"}, actor="tester")
    assert first.record.c_unique_id == "DF_1"
    # legacy import lands after the sequence row exists
    make_record("DF_2", mobile="9000000002")
    make_record("DF_10", mobile="9000000010")

    outcome = crud.create_record(session, {"mobile": "9000000011"}, actor="tester")
    assert outcome.status == crud.STATUS_CREATED
    assert outcome.record.c_unique_id == "DF_11"
    assert session.get(IdentifierSequence, "DF").last_identifier == "DF_11"


@pytest.mark.parametrize(
    "model, columns",
    [
        (CustomerRecord, ["scheduled_at", "created_at", "last_updated"]),
        (ChangeLogEntry, ["changed_at"]),
        (IdentifierSequence, ["updated_at"]),
        (UploadStaging, ["created_at", "expires_at"]),
        (OperationLog, ["created_at"]),
    ],
)
def test_timestamp_columns_hold_naive_local_time(model, columns):
    for name in columns:
        column_type = model.__table__.c[name].type
        assert isinstance(column_type, DateTime)
        assert column_type.timezone is False


def test_writes_use_no_deprecated_session_api(session, make_record):
    record = make_record("DF_1", mobile="9876543210", disposition="interested")
    with warnings.catch_warnings():
        warnings.simplefilter("error", SADeprecationWarning)
        crud.create_record(session, {"mobile": "9000000001"}, actor="tester")
        crud.update_record(session, record.id, {"disposition": "converted"}, actor="tester")


def test_concurrent_creations_get_distinct_identifiers(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'records.db'}")
    SQLModel.metadata.create_all(engine)

    def create(index):
        with Session(engine) as session:
            outcome = crud.create_record(
                session,
                {"mobile": f"90000000{index:02d}", "c_name": f"Customer {index}"},
                actor="tester",
            )
            return outcome.record.c_unique_id

    with ThreadPoolExecutor(max_workers=8) as pool:
        identifiers = list(pool.map(create, range(8)))
    engine.dispose()

    assert len(set(identifiers)) == 8
    assert sorted(identifiers, key=parse_identifier_number) == [f"DF_{n}" for n in range(1, 9)]


def test_retryable_storage_error_reruns_unit_of_work(session, monkeypatch):
    monkeypatch.setattr(crud, "RETRY_BACKOFF_SECONDS", 0)

    class FlakyAllocator(IdentifierAllocator):
        failures = 0

        def allocate(self, session, prefix):
            if self.failures == 0:
                self.failures += 1
                raise IntegrityError("INSERT INTO identifier_sequence", {}, Exception("UNIQUE constraint failed"))
            return super().allocate(session, prefix)

    reconciler = crud.Reconciler(allocator=FlakyAllocator())
    outcome = crud.create_record(session, {"mobile": "9876543210"}, actor="tester", reconciler=reconciler)
    assert outcome.status == crud.STATUS_CREATED
    assert outcome.record.c_unique_id == "DF_1"
    assert reconciler.allocator.failures == 1


def test_non_retryable_storage_error_propagates(session):
    class BrokenAllocator(IdentifierAllocator):
        def allocate(self, session, prefix):
            raise MalformedIdentifier("DF_abc")

    reconciler = crud.Reconciler(allocator=BrokenAllocator())
    with pytest.raises(MalformedIdentifier):
        crud.create_record(session, {"mobile": "9876543210"}, actor="tester", reconciler=reconciler)
    assert session.exec(select(CustomerRecord)).all() == []


def test_detection_is_symmetric(session, make_record):
    first = make_record("DF_1", mobile="9876543210", c_name="Asha")
    second = make_record("DF_2", mobile="9876543210", c_name="Ravi")
    detector = DuplicateDetector()

    for own, other in ((first, second), (second, first)):
        report = detector.detect(session, {"mobile": own.mobile}, exclude_record_id=own.id)
        assert [(hit.field, hit.record_id) for hit in report.hits] == [("mobile", other.id)]


def test_detection_compares_field_for_field(session, make_record):
    make_record("DF_1", mobile="9000000001", ref_mobile_1="9876543210")
    detector = DuplicateDetector()
    assert not detector.detect(session, {"mobile": "9876543210"}).has_duplicates
    report = detector.detect(session, {"ref_mobile_1": " 9876543210 ", "email": ""})
    assert report.fields == ["ref_mobile_1"]


def test_detection_reports_every_colliding_field(session, make_record):
    make_record("DF_1", mobile="9876543210", crn="CRN-1", c_name="Asha")
    make_record("DF_2", loan_card_no="LC-9", c_name="Ravi")
    report = DuplicateDetector().detect(session, {"mobile": "9876543210", "crn": "CRN-1", "loan_card_no": "LC-9"})
    assert sorted(report.fields) == ["crn", "loan_card_no", "mobile"]
    assert len(report.record_ids) == 2
    assert "Loan card number LC-9 is already registered with customer Ravi (DF_2)" in report.messages()


def test_resolver_plans(session, make_record):
    make_record("DF_3", mobile="9876543210")
    make_record("DF_1", crn="CRN-1")
    candidate = {"mobile": "9876543210", "crn": "CRN-1"}
    report = DuplicateDetector().detect(session, candidate)
    resolver = DuplicateResolver()

    assert resolver.resolve(session, "skip", candidate, report).action is PlanAction.NOOP
    assert resolver.resolve(session, "PROMPT", candidate, report).action is PlanAction.DEFER

    replace = resolver.resolve(session, DuplicatePolicy.REPLACE, candidate, report)
    assert replace.action is PlanAction.REPLACE
    assert replace.delete_record_ids == report.record_ids
    # the first stored record hands over its identifier
    assert replace.reuse_identifier == "DF_3"

    append = resolver.resolve(session, "append", candidate, report)
    assert append.action is PlanAction.INSERT
    assert append.values["mobile"] == "9876543210__1"
    assert append.values["crn"] == "CRN-1__1"

    clean = DuplicateDetector().detect(session, {"mobile": "9111111111"})
    assert resolver.resolve(session, "skip", {"mobile": "9111111111"}, clean).action is PlanAction.INSERT


def test_resolver_rejects_unknown_policy(session):
    with pytest.raises(InvalidPolicy):
        DuplicateResolver().resolve(session, "merge", {}, DuplicateDetector().detect(session, {}))


def test_append_suffix_ignores_lookalike_values(session, make_record):
    make_record("DF_1", crn="AB")
    make_record("DF_2", crn="AB__4")
    make_record("DF_3", crn="ABC__9")
    make_record("DF_4", crn="AB_%__7")
    report = DuplicateDetector().detect(session, {"crn": "AB"})
    plan = DuplicateResolver().resolve(session, "append", {"crn": "AB"}, report)
    assert plan.values["crn"] == "AB__5"


def test_skip_policy_leaves_storage_untouched(session, make_record):
    make_record("DF_1", mobile="9876543210")
    count = session.exec(select(func.count()).select_from(CustomerRecord)).one()
    outcome = crud.create_record(session, {"mobile": "9876543210"}, actor="tester", policy="skip")
    assert outcome.status == crud.STATUS_SKIPPED
    assert outcome.written == 0
    assert session.exec(select(func.count()).select_from(CustomerRecord)).one() == count
    assert session.get(IdentifierSequence, "DF") is None


def test_diff_snapshots_treats_absent_fields_as_unchanged():
    before = {"disposition": "interested", "comment": "hello", "shots": 2}
    after = {"disposition": "converted", "shots": 2}
    changes = diff_snapshots(before, after, ["disposition", "comment", "shots"])
    assert [(change.field, change.old_value, change.new_value) for change in changes] == [
        ("disposition", "interested", "converted")
    ]


def test_stringify_log_value():
    assert stringify_log_value(None) is None
    assert stringify_log_value(1500.0) == "1500"
    assert stringify_log_value(12.5) == "12.5"
    assert stringify_log_value(date(2024, 2, 29)) == "2024-02-29"
    assert stringify_log_value(7) == "7"


def test_recorder_requires_actor(session, make_record):
    record = make_record("DF_1", mobile="9876543210", disposition="interested")
    recorder = ChangeLogRecorder()
    with pytest.raises(MissingActor):
        with transaction(session):
            record.disposition = "converted"
            session.add(record)
            session.flush()
            recorder.record_changes(
                session, record.id, record.c_unique_id, {"disposition": "interested"}, {"disposition": "converted"}, " "
            )
    session.expire_all()
    assert session.get(CustomerRecord, record.id).disposition == "interested"
    assert session.exec(select(ChangeLogEntry)).all() == []


def test_update_requires_actor(session, make_record):
    record = make_record("DF_1", mobile="9876543210")
    with pytest.raises(MissingActor):
        crud.update_record(session, record.id, {"comment": "x"}, actor=None)


def test_update_is_atomic_when_audit_write_fails(engine, session, make_record):
    record = make_record("DF_1", mobile="9876543210", disposition="interested")

    class FailingRecorder(ChangeLogRecorder):
        def record_changes(self, *args, **kwargs):
            raise OperationalError("INSERT INTO customer_change_log", {}, Exception("disk I/O error"))

    reconciler = crud.Reconciler(recorder=FailingRecorder())
    with pytest.raises(StorageError) as excinfo:
        crud.update_record(session, record.id, {"disposition": "converted"}, actor="tester", reconciler=reconciler)
    assert excinfo.value.retryable is True

    with Session(engine) as fresh:
        assert fresh.get(CustomerRecord, record.id).disposition == "interested"
        assert fresh.exec(select(ChangeLogEntry)).all() == []
