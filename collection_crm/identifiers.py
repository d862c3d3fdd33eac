"""Human-readable record identifiers of the form ``PREFIX_<n>``."""

from __future__ import annotations

import os
import re
from typing import Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .database import escape_like
from .errors import MalformedIdentifier
from .logging_config import get_logger
from .models import CustomerRecord, IdentifierSequence
from .timezone_utils import now_local_naive

SINGLE_RECORD_PREFIX = os.getenv("SINGLE_RECORD_PREFIX", "DF")
BULK_RECORD_PREFIX = os.getenv("BULK_RECORD_PREFIX", "FF")

_NUMERIC_RE = re.compile(r"[0-9]+")

logger = get_logger(__name__)


def parse_identifier_number(identifier: str) -> int:
    # everything after the first "_", whatever prefix the stored value carries
    _, sep, suffix = (identifier or "").partition("_")
    if not sep or not _NUMERIC_RE.fullmatch(suffix):
        raise MalformedIdentifier(identifier)
    return int(suffix)


def next_identifier(prefix: str, current_max: Optional[str]) -> str:
    if not current_max:
        return f"{prefix}_1"
    return f"{prefix}_{parse_identifier_number(current_max) + 1}"


def highest_identifier(session: Session, prefix: str) -> Optional[str]:
    """Highest stored ``PREFIX_<n>`` by numeric value rather than insertion order."""
    column = CustomerRecord.c_unique_id
    stmt = (
        select(column)
        .where(column.like(escape_like(f"{prefix}_") + "%", escape="\\"))
        .order_by(func.length(column).desc(), column.desc())
        .limit(1)
    )
    return session.exec(stmt).first()


class IdentifierAllocator:
    """Reserves the next identifier for a prefix inside the caller's transaction.

    The prefix's ``IdentifierSequence`` row is locked for the rest of the
    transaction, so concurrent allocators queue behind each other. Two
    allocators seeding a missing row at once collide on its primary key and
    the loser's unit of work is retried by the caller.
    """

    def allocate(self, session: Session, prefix: str) -> str:
        sequence = session.exec(
            select(IdentifierSequence).where(IdentifierSequence.prefix == prefix).with_for_update()
        ).first()
        if sequence is None:
            seed = highest_identifier(session, prefix)
            identifier = next_identifier(prefix, seed)
            sequence = IdentifierSequence(prefix=prefix, last_identifier=identifier)
            logger.info("identifier_sequence_seeded", prefix=prefix, seed=seed)
        else:
            # records written outside the allocator (imports, restores) can be ahead of the sequence
            current = sequence.last_identifier
            stored = highest_identifier(session, prefix)
            if stored and parse_identifier_number(stored) > parse_identifier_number(current):
                logger.warning("identifier_sequence_behind", prefix=prefix, sequence=current, stored=stored)
                current = stored
            identifier = next_identifier(prefix, current)
            sequence.last_identifier = identifier
            sequence.updated_at = now_local_naive()
        session.add(sequence)
        session.flush()
        return identifier
