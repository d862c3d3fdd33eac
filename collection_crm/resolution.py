"""Turns a duplicate report plus a caller-chosen policy into a mutation plan."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from .database import escape_like
from .duplicates import DuplicateReport
from .errors import InvalidPolicy
from .models import CustomerRecord

SUFFIX_SEPARATOR = "__"
_SUFFIX_RE = re.compile(r"__(\d+)$")


class DuplicatePolicy(str, Enum):
    SKIP = "skip"
    APPEND = "append"
    REPLACE = "replace"
    PROMPT = "prompt"


class PlanAction(str, Enum):
    NOOP = "noop"
    DEFER = "defer"
    INSERT = "insert"
    REPLACE = "replace"


@dataclass
class ResolutionPlan:
    action: PlanAction
    values: Dict[str, Any] = field(default_factory=dict)
    delete_record_ids: List[int] = field(default_factory=list)
    reuse_identifier: Optional[str] = None
    suffixed_fields: Dict[str, str] = field(default_factory=dict)
    report: DuplicateReport = field(default_factory=DuplicateReport)


def coerce_policy(policy: Any) -> DuplicatePolicy:
    if isinstance(policy, DuplicatePolicy):
        return policy
    try:
        return DuplicatePolicy(str(policy).strip().lower())
    except ValueError as exc:
        raise InvalidPolicy(policy) from exc


def next_suffix(session: Session, field_name: str, base: str) -> int:
    """One more than the highest ``__<n>`` already used for ``base`` in ``field_name``."""
    column = getattr(CustomerRecord, field_name)
    pattern = escape_like(f"{base}{SUFFIX_SEPARATOR}") + "%"
    stored = session.exec(
        select(column).where(or_(column == base, column.like(pattern, escape="\\")))
    ).all()
    highest = 0
    for value in stored:
        match = _SUFFIX_RE.search(value or "")
        if match and value[: match.start()] == base:
            highest = max(highest, int(match.group(1)))
    return highest + 1


class DuplicateResolver:
    def resolve(
        self,
        session: Session,
        policy: Any,
        candidate: Mapping[str, Any],
        report: DuplicateReport,
    ) -> ResolutionPlan:
        chosen = coerce_policy(policy)
        values = dict(candidate)
        if not report.has_duplicates:
            return ResolutionPlan(action=PlanAction.INSERT, values=values, report=report)

        if chosen is DuplicatePolicy.SKIP:
            return ResolutionPlan(action=PlanAction.NOOP, values=values, report=report)
        if chosen is DuplicatePolicy.PROMPT:
            return ResolutionPlan(action=PlanAction.DEFER, values=values, report=report)

        if chosen is DuplicatePolicy.APPEND:
            suffixed: Dict[str, str] = {}
            for field_name in report.fields:
                base = str(values[field_name]).strip()
                suffixed[field_name] = f"{base}{SUFFIX_SEPARATOR}{next_suffix(session, field_name, base)}"
            values.update(suffixed)
            return ResolutionPlan(
                action=PlanAction.INSERT,
                values=values,
                suffixed_fields=suffixed,
                report=report,
            )

        # replace: the oldest conflicting record hands its identifier over
        oldest = min(report.hits, key=lambda hit: hit.record_id)
        return ResolutionPlan(
            action=PlanAction.REPLACE,
            values=values,
            delete_record_ids=report.record_ids,
            reuse_identifier=oldest.c_unique_id,
            report=report,
        )
