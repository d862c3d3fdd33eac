from __future__ import annotations

import argparse
import json
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlmodel import Session, select

from .. import crud
from ..database import engine, transaction
from ..errors import MalformedIdentifier
from ..identifiers import highest_identifier, parse_identifier_number
from ..models import ChangeLogEntry, CustomerRecord, IdentifierSequence, UploadStaging
from ..timezone_utils import format_local, now_local, now_local_naive
from ..validation import IDENTITY_FIELDS, is_blank


@dataclass
class AuditIssue:
    severity: str
    category: str
    entity: str
    entity_id: Optional[Any]
    message: str
    details: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass
class AuditReport:
    stats: Dict[str, int]
    issues: List[AuditIssue]

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats,
            "issue_count": self.issue_count,
            "issues": [issue.as_dict() for issue in self.issues],
        }


def _audit_identifiers(records: List[CustomerRecord]) -> List[AuditIssue]:
    issues: List[AuditIssue] = []
    identifiers = Counter((record.c_unique_id or "").strip().upper() for record in records)
    for record in records:
        normalized = (record.c_unique_id or "").strip().upper()
        if not normalized:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="c_unique_id",
                    entity="customer_record",
                    entity_id=record.id,
                    message="c_unique_id is missing",
                )
            )
            continue
        if identifiers[normalized] > 1:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="c_unique_id",
                    entity="customer_record",
                    entity_id=record.id,
                    message="c_unique_id is duplicated",
                    details={"c_unique_id": normalized},
                )
            )
        try:
            parse_identifier_number(normalized)
        except MalformedIdentifier:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="c_unique_id",
                    entity="customer_record",
                    entity_id=record.id,
                    message="c_unique_id has no numeric suffix",
                    details={"c_unique_id": normalized},
                )
            )
    return issues


def _audit_identity_values(records: List[CustomerRecord]) -> List[AuditIssue]:
    owners: Dict[Tuple[str, str], List[CustomerRecord]] = defaultdict(list)
    for record in records:
        for name in IDENTITY_FIELDS:
            value = getattr(record, name)
            if not is_blank(value):
                owners[(name, str(value).strip())].append(record)

    issues: List[AuditIssue] = []
    for (name, value), rows in owners.items():
        if len(rows) < 2:
            continue
        issues.append(
            AuditIssue(
                severity="warning",
                category="identity_value",
                entity="customer_record",
                entity_id=rows[0].id,
                message=f"{name} is shared by {len(rows)} records",
                details={"field": name, "c_unique_ids": [row.c_unique_id for row in rows]},
            )
        )
    return issues


def _audit_sequences(session: Session, sequences: List[IdentifierSequence]) -> List[AuditIssue]:
    issues: List[AuditIssue] = []
    for sequence in sequences:
        try:
            issued = parse_identifier_number(sequence.last_identifier)
            stored_max = highest_identifier(session, sequence.prefix)
            stored = parse_identifier_number(stored_max) if stored_max else 0
        except MalformedIdentifier as exc:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="identifier_sequence",
                    entity="identifier_sequence",
                    entity_id=sequence.prefix,
                    message="identifier is malformed",
                    details={"identifier": exc.identifier},
                )
            )
            continue
        if issued < stored:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="identifier_sequence",
                    entity="identifier_sequence",
                    entity_id=sequence.prefix,
                    message="sequence is behind the highest stored identifier",
                    details={"last_identifier": sequence.last_identifier, "stored_max": stored_max},
                )
            )
    return issues


def run_audit(session: Session) -> AuditReport:
    records = session.exec(select(CustomerRecord)).all()
    entries = session.exec(select(ChangeLogEntry)).all()
    sequences = session.exec(select(IdentifierSequence)).all()
    staged = session.exec(select(UploadStaging)).all()

    stats = {
        "records": len(records),
        "change_log_entries": len(entries),
        "sequences": len(sequences),
        "staged_uploads": len(staged),
    }

    issues: List[AuditIssue] = []
    issues.extend(_audit_identifiers(records))
    issues.extend(_audit_identity_values(records))
    issues.extend(_audit_sequences(session, sequences))

    record_ids = {record.id for record in records}
    for entry in entries:
        if entry.record_id not in record_ids:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="change_log_reference",
                    entity="customer_change_log",
                    entity_id=entry.id,
                    message="record_id does not point to an existing record",
                    details={"record_id": entry.record_id, "c_unique_id": entry.c_unique_id},
                )
            )

    now = now_local_naive()
    for staging in staged:
        if staging.expires_at <= now:
            issues.append(
                AuditIssue(
                    severity="warning",
                    category="upload_staging",
                    entity="upload_staging",
                    entity_id=staging.upload_id,
                    message="staged upload expired without confirmation",
                    details={"expires_at": staging.expires_at.isoformat(), "rows": staging.record_count},
                )
            )

    return AuditReport(stats=stats, issues=issues)


def format_issue(issue: AuditIssue) -> str:
    prefix = f"[{issue.severity.upper()}] {issue.entity}#{issue.entity_id or '-'} {issue.category}"
    if issue.details:
        return f"{prefix}: {issue.message} | {json.dumps(issue.details, ensure_ascii=False)}"
    return f"{prefix}: {issue.message}"


def print_report(report: AuditReport) -> None:
    stats = report.stats
    print(f"Audit at {format_local(now_local())}")
    print(
        "Audited records={records}, change_log_entries={change_log_entries}, "
        "sequences={sequences}, staged_uploads={staged_uploads}".format(**stats)
    )
    if not report.issues:
        print("No consistency issues detected.")
        return
    print(f"Found {report.issue_count} issues:")
    for idx, issue in enumerate(report.issues, start=1):
        print(f"{idx:02d}. {format_issue(issue)}")


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit data consistency for the collection CRM backend")
    parser.add_argument(
        "--purge-expired",
        action="store_true",
        help="Delete expired staged uploads before auditing",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the audit report as JSON",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    with Session(engine) as session:
        if args.purge_expired:
            with transaction(session):
                purged = crud.purge_expired_uploads(session)
            print(f"Purged {purged} expired staged uploads.")
        report = run_audit(session)
    if args.json:
        print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
    else:
        print_report(report)
    return 1 if report.issue_count else 0


if __name__ == "__main__":
    raise SystemExit(main())
