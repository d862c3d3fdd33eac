from datetime import date, datetime, timezone

import pytest
from structlog.testing import capture_logs

from collection_crm.timezone_utils import to_storage_datetime
from collection_crm.validation import (
    CUSTOMER_FIELD_RULES,
    DateRule,
    EnumRule,
    PhoneRule,
    RecordValidator,
    parse_datetime_value,
)


def test_phone_digit_boundary():
    validator = RecordValidator()
    accepted = validator.validate({"mobile": "919876543210"})
    assert accepted.ok
    assert accepted.values["mobile"] == "919876543210"

    rejected = validator.validate({"mobile": "9198765432101"})
    assert not rejected.ok
    assert rejected.errors[0].field == "mobile"
    assert rejected.errors[0].code == "PhoneTooLong"


def test_phone_strips_formatting_and_spreadsheet_floats():
    rule = PhoneRule()
    assert rule.normalize("mobile", "+91 98765-43210") == "919876543210"
    assert rule.normalize("mobile", 9876543210.0) == "9876543210"
    assert rule.normalize("mobile", "   ") is None
    assert rule.normalize("mobile", "n/a") is None


def test_required_phone_is_collected_not_raised():
    result = RecordValidator().validate({"c_name": "Asha", "ref_mobile_2": "1" * 13})
    assert [(error.field, error.code) for error in result.errors] == [
        ("mobile", "Required"),
        ("ref_mobile_2", "PhoneTooLong"),
    ]
    assert result.values["c_name"] == "Asha"
    assert len(result.messages()) == 2


def test_dd_mm_yyyy_dates():
    rule = DateRule()
    assert rule.normalize("paid_date", "29/02/2024") == date(2024, 2, 29)
    with capture_logs() as logs:
        assert rule.normalize("paid_date", "31/02/2024") is None
    assert logs[0]["event"] == "date_parse_failed"
    assert logs[0]["log_level"] == "warning"
    assert logs[0]["field"] == "paid_date"


def test_spreadsheet_serial_dates():
    assert parse_datetime_value(45351) == datetime(2024, 2, 29)
    assert parse_datetime_value("45351") == datetime(2024, 2, 29)
    # serials outside 2000-2100 are not dates
    assert parse_datetime_value(100) is None
    with capture_logs() as logs:
        assert DateRule().normalize("paid_date", 100) is None
    assert [entry["event"] for entry in logs] == ["date_parse_failed"]


def test_iso_dates_are_stored_as_local_time():
    assert parse_datetime_value("2024-03-01") == datetime(2024, 3, 1)
    expected = to_storage_datetime(datetime(2024, 3, 1, 4, 30, tzinfo=timezone.utc))
    assert parse_datetime_value("2024-03-01T04:30:00Z") == expected
    assert parse_datetime_value("next tuesday") is None


def test_enum_coercion_is_silent_but_logged():
    rule = EnumRule(("interested", "converted"))
    assert rule.normalize("disposition", " CONVERTED ") == "converted"
    with capture_logs() as logs:
        assert rule.normalize("disposition", "maybe later") is None
    assert logs[0]["event"] == "invalid_enum_value"
    assert logs[0]["replacement"] is None


def test_enum_defaults_on_create():
    values = RecordValidator().validate({"mobile": "9876543210", "calling_code": "xyz"}).values
    assert values["calling_code"] == "WN"
    assert values["field_code"] == "ANF"
    assert values["disposition"] is None


def test_bounded_strings_truncate():
    result = RecordValidator().validate({"mobile": "9876543210", "c_name": "A" * 150, "comment": "  "})
    assert result.ok
    assert result.values["c_name"] == "A" * 100
    assert result.values["comment"] is None


def test_amounts_and_integers_degrade_to_none():
    result = RecordValidator().validate(
        {"mobile": "9876543210", "pos": "1,500.50", "emi_amt": "abc", "shots": "3", "team_id": "x"}
    )
    assert result.ok
    assert result.values["pos"] == 1500.5
    assert result.values["emi_amt"] is None
    assert result.values["shots"] == 3
    assert result.values["team_id"] is None


def test_email_is_validated_and_lowercased():
    validator = RecordValidator()
    assert validator.validate({"mobile": "1", "email": "Asha@Example.COM"}).values["email"] == "asha@example.com"
    result = validator.validate({"mobile": "1", "email": "asha@"})
    assert [error.code for error in result.errors] == ["InvalidEmail"]


def test_partial_validation_only_touches_submitted_fields():
    result = RecordValidator().validate({"disposition": "Converted", "unknown_column": "x"}, partial=True)
    assert result.ok
    assert result.values == {"disposition": "converted"}


@pytest.mark.parametrize("field_name", sorted(CUSTOMER_FIELD_RULES))
def test_every_rule_accepts_blank_input(field_name):
    rule = CUSTOMER_FIELD_RULES[field_name]
    if rule.required:
        return
    assert rule.normalize(field_name, "") == rule.default
