"""
Temporal validity helpers for effective_from / effective_until records.

Grants, assignments and resource permissions are never deleted, they are
bounded by a validity window instead. The helpers here answer "is this
record valid at instant t" in Python and build the equivalent SQLAlchemy
filter clauses for queries.

A missing end always means "no expiry". Where an end has to be compared as
a value it is replaced with FAR_FUTURE (9999-12-31T23:59:59Z), since
timestamp columns cannot hold infinity.

Usage:
    from app.core.temporal import build_validity_filter

    stmt = select(UserRole).where(
        build_validity_filter(UserRole.effective_from, UserRole.effective_until)
    )
"""
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple

from sqlalchemy import and_, or_, true
from sqlalchemy.sql.elements import ColumnElement

from app.core.exceptions import ValidationError


FAR_FUTURE = datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
FAR_PAST = datetime(1, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes; everything stored by this service is
    UTC, so naive values are tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_currently_valid(
    effective_from: Optional[datetime],
    effective_until: Optional[datetime],
    as_of: Optional[datetime] = None,
) -> bool:
    """
    Return True if as_of lies within [effective_from, effective_until].

    A None start means "valid since always", a None end means "no expiry".
    """
    as_of = as_utc(as_of) or utcnow()
    start = as_utc(effective_from)
    end = as_utc(effective_until)

    if start is not None and start > as_of:
        return False
    if end is not None and as_of > end:
        return False
    return True


def do_periods_overlap(
    start1: Optional[datetime],
    end1: Optional[datetime],
    start2: Optional[datetime],
    end2: Optional[datetime],
) -> bool:
    """
    Return True if [start1, end1] and [start2, end2] share at least one instant.

    None ends compare as FAR_FUTURE and None starts as FAR_PAST.
    """
    s1 = as_utc(start1) or FAR_PAST
    s2 = as_utc(start2) or FAR_PAST
    e1 = as_utc(end1) or FAR_FUTURE
    e2 = as_utc(end2) or FAR_FUTURE
    return s1 <= e2 and s2 <= e1


def validate_temporal_range(
    effective_from: Optional[datetime],
    effective_until: Optional[datetime],
) -> None:
    """
    Reject a window that ends before it starts.

    Raises:
        ValidationError: If both bounds are set and effective_from > effective_until
    """
    start = as_utc(effective_from)
    end = as_utc(effective_until)
    if start is not None and end is not None and start > end:
        raise ValidationError("effective_from must be before or equal to effective_until")


def build_validity_filter(
    start_col,
    end_col,
    as_of: Optional[datetime] = None,
    include_future: bool = False,
    include_expired: bool = False,
) -> ColumnElement[bool]:
    """
    Build a WHERE clause selecting records by temporal validity.

    Modes:
        include_future and include_expired -> every record
        include_expired only               -> records that ended at or before as_of
        include_future only                -> records starting at or after as_of
        neither (default)                  -> records valid at as_of
    """
    as_of = as_utc(as_of) or utcnow()

    if include_future and include_expired:
        return true()

    if include_expired:
        return and_(end_col.is_not(None), end_col <= as_of)

    if include_future:
        return start_col >= as_of

    return and_(
        start_col <= as_of,
        or_(end_col.is_(None), end_col >= as_of),
    )


def overlap_filter(
    start_col,
    end_col,
    effective_from: Optional[datetime] = None,
    effective_until: Optional[datetime] = None,
) -> ColumnElement[bool]:
    """
    Build a WHERE clause selecting records whose window intersects a candidate window.

    Used before inserting a new assignment to find the ones it would overlap.
    Existing records always have a start; their end may be open.
    """
    new_start = as_utc(effective_from)
    new_end = as_utc(effective_until)

    # Unbounded candidate overlaps everything
    if new_start is None and new_end is None:
        return true()

    # Open-ended candidate: anything still running at its start
    if new_end is None:
        return or_(end_col.is_(None), end_col >= new_start)

    # Candidate valid since always: anything started by its end
    if new_start is None:
        return start_col <= new_end

    return or_(
        # Existing starts inside the candidate
        and_(start_col >= new_start, start_col <= new_end),
        # Existing ends inside the candidate
        and_(end_col >= new_start, end_col <= new_end),
        # Existing contains the candidate
        and_(start_col <= new_start, end_col >= new_end),
        # Existing has no end and starts before the candidate ends
        and_(start_col <= new_end, end_col.is_(None)),
    )


def revoked_until(
    effective_from: Optional[datetime],
    effective_until: Optional[datetime],
    at: Optional[datetime] = None,
) -> datetime:
    """
    End of a window revoked at `at` (default now).

    The end only ever moves earlier. A window that has not started yet is
    closed at its own start so it never ends before it begins.
    """
    at = as_utc(at) or utcnow()
    end = as_utc(effective_until)
    end = at if end is None else min(end, at)
    start = as_utc(effective_from)
    if start is not None and start > end:
        return start
    return end


def next_boundary(windows: Iterable[Tuple[Optional[datetime], Optional[datetime]]],
                  as_of: Optional[datetime] = None) -> Optional[datetime]:
    """
    Earliest instant after as_of at which any of the windows starts or ends.

    Anything derived from "which windows are valid at as_of" stays correct
    until then. None when no window changes state in the future.
    """
    as_of = as_utc(as_of) or utcnow()
    upcoming = [
        bound
        for window in windows
        for bound in map(as_utc, window)
        if bound is not None and bound > as_of
    ]
    return min(upcoming, default=None)
