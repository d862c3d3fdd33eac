"""Table-driven coercion of incoming record fields.

Each rule turns a raw value into a normalized one. Soft rules (enums, dates,
amounts) degrade to a default and log a warning; hard rules (phones, required
fields, email format) report a ``FieldError``. ``RecordValidator`` collects
every error for a record instead of stopping at the first one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .logging_config import get_logger
from .timezone_utils import to_storage_datetime

logger = get_logger(__name__)

PHONE_MAX_DIGITS = 12

# spreadsheet serial day 0
SERIAL_EPOCH = datetime(1899, 12, 30)
SERIAL_MIN_YEAR = 2000
SERIAL_MAX_YEAR = 2100

CALLING_CODES = ("WN", "NC", "CB", "PTP", "RTP")
FIELD_CODES = ("ANF", "SKIP", "RTP", "REVISIT", "PTP")
DISPOSITIONS = (
    "interested",
    "not interested",
    "needs to call back",
    "switched off",
    "ringing no response",
    "follow-up",
    "invalid number",
    "whatsapp number",
    "converted",
    "referral",
)

PHONE_FIELDS = ("mobile",) + tuple(f"ref_mobile_{index}" for index in range(1, 8))
IDENTITY_FIELDS = PHONE_FIELDS + ("email", "crn", "loan_card_no")

_DMY_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class FieldError:
    field: str
    code: str
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


class FieldRuleError(Exception):
    """Raised by a rule; collected by the validator, never escapes it."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


class FieldRule:
    required: bool = False
    default: Any = None

    def normalize(self, field_name: str, value: Any) -> Any:
        raise NotImplementedError


class BoundedStringRule(FieldRule):
    def __init__(self, max_length: int) -> None:
        self.max_length = max_length

    def normalize(self, field_name: str, value: Any) -> Optional[str]:
        if is_blank(value):
            return None
        return str(value).strip()[: self.max_length]


class EnumRule(FieldRule):
    def __init__(self, values: Sequence[str], default: Optional[str] = None) -> None:
        self.values = tuple(values)
        self.default = default
        self._lookup = {item.lower(): item for item in self.values}

    def normalize(self, field_name: str, value: Any) -> Optional[str]:
        if is_blank(value):
            return self.default
        normalized = str(value).strip().lower()
        if normalized in self._lookup:
            return self._lookup[normalized]
        logger.warning("invalid_enum_value", field=field_name, value=str(value), replacement=self.default)
        return self.default


class PhoneRule(FieldRule):
    def __init__(self, required: bool = False) -> None:
        self.required = required

    def normalize(self, field_name: str, value: Any) -> Optional[str]:
        if is_blank(value):
            if self.required:
                raise FieldRuleError("Required", f"{field_name} is required")
            return None
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        digits = re.sub(r"\D", "", str(value))
        if len(digits) > PHONE_MAX_DIGITS:
            raise FieldRuleError("PhoneTooLong", f"{field_name} cannot exceed {PHONE_MAX_DIGITS} digits")
        if not digits:
            if self.required:
                raise FieldRuleError("Required", f"{field_name} is required")
            return None
        return digits


class EmailRule(BoundedStringRule):
    def normalize(self, field_name: str, value: Any) -> Optional[str]:
        text = super().normalize(field_name, value)
        if text is None:
            return None
        if not _EMAIL_RE.match(text):
            raise FieldRuleError("InvalidEmail", f"{field_name} is not a valid email address")
        return text.lower()


class AmountRule(FieldRule):
    def normalize(self, field_name: str, value: Any) -> Optional[float]:
        if is_blank(value):
            return None
        text = str(value).strip().replace(",", "")
        try:
            return round(float(text), 2)
        except ValueError:
            logger.warning("amount_parse_failed", field=field_name, value=str(value))
            return None


class IntegerRule(FieldRule):
    def normalize(self, field_name: str, value: Any) -> Optional[int]:
        if is_blank(value):
            return None
        try:
            return int(float(str(value).strip()))
        except ValueError:
            logger.warning("integer_parse_failed", field=field_name, value=str(value))
            return None


def _from_serial(serial: float) -> Optional[datetime]:
    try:
        converted = SERIAL_EPOCH + timedelta(days=serial)
    except OverflowError:
        return None
    if not SERIAL_MIN_YEAR <= converted.year <= SERIAL_MAX_YEAR:
        return None
    return converted


def parse_datetime_value(value: Any) -> Optional[datetime]:
    """Best-effort parse of spreadsheet serials, DD/MM/YYYY and ISO-8601 strings."""
    if isinstance(value, datetime):
        return to_storage_datetime(value) if value.tzinfo is not None else value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_serial(float(value))
    text = str(value).strip()
    if _NUMBER_RE.match(text):
        return _from_serial(float(text))
    match = _DMY_RE.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        try:
            return datetime(year, month, day)
        except ValueError:
            return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        return to_storage_datetime(parsed)
    return parsed


class DateRule(FieldRule):
    def normalize(self, field_name: str, value: Any) -> Optional[date]:
        if is_blank(value):
            return None
        parsed = parse_datetime_value(value)
        if parsed is None:
            logger.warning("date_parse_failed", field=field_name, value=str(value))
            return None
        return parsed.date()


class DateTimeRule(FieldRule):
    def normalize(self, field_name: str, value: Any) -> Optional[datetime]:
        if is_blank(value):
            return None
        parsed = parse_datetime_value(value)
        if parsed is None:
            logger.warning("date_parse_failed", field=field_name, value=str(value))
            return None
        return parsed.replace(microsecond=0)


CUSTOMER_FIELD_RULES: Dict[str, FieldRule] = {
    "mobile": PhoneRule(required=True),
    **{name: PhoneRule() for name in PHONE_FIELDS[1:]},
    "email": EmailRule(100),
    "crn": BoundedStringRule(25),
    "loan_card_no": BoundedStringRule(25),
    "c_name": BoundedStringRule(100),
    "product": BoundedStringRule(15),
    "bank_name": BoundedStringRule(100),
    "banker_name": BoundedStringRule(100),
    "agent_name": BoundedStringRule(100),
    "tl_name": BoundedStringRule(100),
    "fl_supervisor": BoundedStringRule(100),
    "team_id": IntegerRule(),
    "dpd_vintage": BoundedStringRule(20),
    "pos": AmountRule(),
    "emi_amt": AmountRule(),
    "loan_amt": AmountRule(),
    "paid_amt": AmountRule(),
    "settl_amt": AmountRule(),
    "paid_date": DateRule(),
    "shots": IntegerRule(),
    "office_address": BoundedStringRule(255),
    "resi_address": BoundedStringRule(255),
    "pincode": BoundedStringRule(10),
    "calling_code": EnumRule(CALLING_CODES, default="WN"),
    "field_code": EnumRule(FIELD_CODES, default="ANF"),
    "disposition": EnumRule(DISPOSITIONS),
    "calling_feedback": BoundedStringRule(500),
    "field_feedback": BoundedStringRule(500),
    "new_track_no": BoundedStringRule(50),
    "comment": BoundedStringRule(500),
    "scheduled_at": DateTimeRule(),
}


@dataclass
class ValidationResult:
    values: Dict[str, Any] = field(default_factory=dict)
    errors: List[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def messages(self) -> List[str]:
        return [error.message for error in self.errors]


class RecordValidator:
    def __init__(self, rules: Optional[Mapping[str, FieldRule]] = None) -> None:
        self.rules: Mapping[str, FieldRule] = rules if rules is not None else CUSTOMER_FIELD_RULES

    @property
    def fields(self) -> List[str]:
        return list(self.rules)

    def validate(self, raw: Mapping[str, Any], *, partial: bool = False) -> ValidationResult:
        """Normalize ``raw``.

        With ``partial`` only submitted fields are validated (update path);
        otherwise every rule runs and absent fields receive the rule default.
        Unknown keys are ignored.
        """
        result = ValidationResult()
        for name, rule in self.rules.items():
            if partial and name not in raw:
                continue
            try:
                result.values[name] = rule.normalize(name, raw.get(name))
            except FieldRuleError as exc:
                result.errors.append(FieldError(field=name, code=exc.code, message=exc.message))
        return result
