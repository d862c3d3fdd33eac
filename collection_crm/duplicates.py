from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import or_
from sqlmodel import Session, select

from .models import CustomerRecord
from .validation import IDENTITY_FIELDS, is_blank

FIELD_LABELS = {
    "mobile": "Phone number",
    "email": "Email address",
    "crn": "CRN",
    "loan_card_no": "Loan card number",
    **{f"ref_mobile_{index}": f"Reference phone number {index}" for index in range(1, 8)},
}


@dataclass(frozen=True)
class DuplicateHit:
    field: str
    value: str
    record_id: int
    c_unique_id: str
    record_name: Optional[str] = None

    def message(self) -> str:
        label = FIELD_LABELS.get(self.field, self.field)
        owner = self.record_name or "(unnamed)"
        return f"{label} {self.value} is already registered with customer {owner} ({self.c_unique_id})"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "value": self.value,
            "record_id": self.record_id,
            "c_unique_id": self.c_unique_id,
            "record_name": self.record_name,
            "message": self.message(),
        }


@dataclass
class DuplicateReport:
    hits: List[DuplicateHit] = field(default_factory=list)

    @property
    def has_duplicates(self) -> bool:
        return bool(self.hits)

    @property
    def fields(self) -> List[str]:
        seen: List[str] = []
        for hit in self.hits:
            if hit.field not in seen:
                seen.append(hit.field)
        return seen

    @property
    def record_ids(self) -> List[int]:
        return sorted({hit.record_id for hit in self.hits})

    def messages(self) -> List[str]:
        return [hit.message() for hit in self.hits]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "has_duplicates": self.has_duplicates,
            "hits": [hit.as_dict() for hit in self.hits],
            "messages": self.messages(),
        }


def _clean(value: Any) -> str:
    return str(value).strip()


class DuplicateDetector:
    """Finds stored records sharing an identity value with a candidate.

    Matching is field-for-field: a candidate's ``mobile`` is only compared with
    stored ``mobile`` values, never with ``ref_mobile_1``.
    """

    def __init__(self, identity_fields: Sequence[str] = IDENTITY_FIELDS) -> None:
        self.identity_fields = tuple(identity_fields)

    def identity_values(self, candidate: Mapping[str, Any]) -> Dict[str, str]:
        return {
            name: _clean(candidate[name])
            for name in self.identity_fields
            if name in candidate and not is_blank(candidate[name])
        }

    def detect(
        self,
        session: Session,
        candidate: Mapping[str, Any],
        exclude_record_id: Optional[int] = None,
    ) -> DuplicateReport:
        present = self.identity_values(candidate)
        if not present:
            return DuplicateReport()
        conditions = [getattr(CustomerRecord, name) == value for name, value in present.items()]
        stmt = select(CustomerRecord).where(or_(*conditions))
        if exclude_record_id is not None:
            stmt = stmt.where(CustomerRecord.id != exclude_record_id)
        rows = session.exec(stmt.order_by(CustomerRecord.id)).all()

        hits: List[DuplicateHit] = []
        for row in rows:
            for name, value in present.items():
                stored = getattr(row, name)
                if is_blank(stored) or _clean(stored) != value:
                    continue
                hits.append(
                    DuplicateHit(
                        field=name,
                        value=value,
                        record_id=row.id,
                        c_unique_id=row.c_unique_id,
                        record_name=row.c_name,
                    )
                )
        return DuplicateReport(hits=hits)
