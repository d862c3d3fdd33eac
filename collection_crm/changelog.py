from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, List, Mapping, Optional

from sqlmodel import Session

from .errors import MissingActor
from .models import ChangeLogEntry
from .timezone_utils import now_local_naive
from .validation import CUSTOMER_FIELD_RULES

TRACKED_FIELDS = tuple(CUSTOMER_FIELD_RULES)


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any
    new_value: Any


def stringify_log_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, float):
        return f"{value:.2f}".rstrip("0").rstrip(".") if not value.is_integer() else str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=" ", timespec="seconds")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def diff_snapshots(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    fields: Iterable[str] = TRACKED_FIELDS,
) -> List[FieldChange]:
    """Field-level differences; a field missing from ``after`` counts as unchanged."""
    changes: List[FieldChange] = []
    for name in fields:
        if name not in before or name not in after:
            continue
        if before[name] != after[name]:
            changes.append(FieldChange(field=name, old_value=before[name], new_value=after[name]))
    return changes


class ChangeLogRecorder:
    def __init__(self, fields: Iterable[str] = TRACKED_FIELDS) -> None:
        self.fields = tuple(fields)

    def record_changes(
        self,
        session: Session,
        record_id: int,
        external_id: Optional[str],
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        actor: Optional[str],
    ) -> List[ChangeLogEntry]:
        """Write one audit row per changed field in the caller's transaction."""
        if not actor or not str(actor).strip():
            raise MissingActor("change log")
        changed_at = now_local_naive()
        entries = [
            ChangeLogEntry(
                record_id=record_id,
                c_unique_id=external_id,
                field=change.field,
                old_value=stringify_log_value(change.old_value),
                new_value=stringify_log_value(change.new_value),
                changed_by=str(actor).strip(),
                changed_at=changed_at,
            )
            for change in diff_snapshots(before, after, self.fields)
        ]
        if entries:
            session.add_all(entries)
            session.flush()
        return entries
