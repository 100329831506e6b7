from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, insert, select

from app.core.exceptions import ValidationError
from app.core.temporal import (
    FAR_FUTURE,
    as_utc,
    build_validity_filter,
    do_periods_overlap,
    is_currently_valid,
    next_boundary,
    overlap_filter,
    revoked_until,
    validate_temporal_range,
)

UTC = timezone.utc
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
DAY = timedelta(days=1)


def test_far_future_sentinel():
    assert FAR_FUTURE == datetime(9999, 12, 31, 23, 59, 59, tzinfo=UTC)


def test_as_utc_tags_naive_and_converts_aware():
    naive = datetime(2025, 1, 1, 8, 0)
    assert as_utc(naive) == datetime(2025, 1, 1, 8, 0, tzinfo=UTC)

    jakarta = timezone(timedelta(hours=7))
    assert as_utc(datetime(2025, 1, 1, 8, 0, tzinfo=jakarta)) == datetime(2025, 1, 1, 1, 0, tzinfo=UTC)
    assert as_utc(None) is None


@pytest.mark.parametrize(
    "start, end, expected",
    [
        (NOW - DAY, NOW + DAY, True),
        (NOW - DAY, None, True),
        (None, None, True),
        (None, NOW + DAY, True),
        (NOW + DAY, None, False),
        (NOW - 2 * DAY, NOW - DAY, False),
        (NOW, NOW, True),
    ],
)
def test_is_currently_valid(start, end, expected):
    assert is_currently_valid(start, end, NOW) is expected


def test_is_currently_valid_is_true_throughout_the_window():
    start, end = NOW, NOW + 10 * DAY
    instants = [start + i * DAY for i in range(11)]
    assert all(is_currently_valid(start, end, t) for t in instants)
    assert not is_currently_valid(start, end, start - timedelta(seconds=1))
    assert not is_currently_valid(start, end, end + timedelta(seconds=1))


def test_is_currently_valid_defaults_to_now():
    assert is_currently_valid(datetime.now(UTC) - DAY, None)
    assert not is_currently_valid(datetime.now(UTC) + DAY, None)


def test_is_currently_valid_accepts_naive_datetimes():
    assert is_currently_valid(datetime(2025, 5, 1), datetime(2025, 7, 1), NOW)


PERIODS = [
    (NOW, NOW + DAY),
    (NOW + DAY, NOW + 3 * DAY),
    (NOW + 2 * DAY, None),
    (None, NOW - DAY),
    (None, None),
    (NOW - 5 * DAY, NOW - 4 * DAY),
]


@pytest.mark.parametrize("a", PERIODS)
@pytest.mark.parametrize("b", PERIODS)
def test_do_periods_overlap_is_symmetric(a, b):
    assert do_periods_overlap(*a, *b) == do_periods_overlap(*b, *a)


def test_do_periods_overlap_cases():
    assert do_periods_overlap(NOW, NOW + DAY, NOW + DAY, NOW + 2 * DAY)  # touching ends
    assert not do_periods_overlap(NOW, NOW + DAY, NOW + 2 * DAY, NOW + 3 * DAY)
    assert do_periods_overlap(NOW, None, NOW + 100 * DAY, NOW + 101 * DAY)
    assert do_periods_overlap(None, None, NOW, NOW)
    assert not do_periods_overlap(None, NOW - DAY, NOW, None)


def test_validate_temporal_range():
    validate_temporal_range(NOW, NOW + DAY)
    validate_temporal_range(NOW, NOW)
    validate_temporal_range(None, NOW)
    validate_temporal_range(NOW, None)
    with pytest.raises(ValidationError):
        validate_temporal_range(NOW + DAY, NOW)


def test_revoked_until_ends_open_window_now():
    assert revoked_until(NOW - DAY, None, NOW) == NOW


def test_revoked_until_keeps_an_earlier_end():
    assert revoked_until(NOW - 2 * DAY, NOW - DAY, NOW) == NOW - DAY
    assert revoked_until(NOW - DAY, NOW + DAY, NOW) == NOW


def test_revoked_until_closes_unstarted_window_at_its_start():
    assert revoked_until(NOW + DAY, NOW + 2 * DAY, NOW) == NOW + DAY
    assert revoked_until(NOW + DAY, None, NOW) == NOW + DAY


def test_next_boundary():
    periods = [
        (NOW - DAY, NOW + 3 * DAY),
        (NOW + DAY, None),
        (None, NOW - DAY),
    ]
    assert next_boundary(periods, NOW) == NOW + DAY
    assert next_boundary(periods, NOW + DAY) == NOW + 3 * DAY
    assert next_boundary(periods, NOW + 3 * DAY) is None
    assert next_boundary([], NOW) is None


def test_next_boundary_accepts_naive_datetimes():
    assert next_boundary([(datetime(2025, 6, 1, 18, 0), None)], NOW) == datetime(2025, 6, 1, 18, 0, tzinfo=UTC)


# ----------------------------------------------------------------------------
# SQL filters
# ----------------------------------------------------------------------------

windows = Table(
    "windows",
    MetaData(),
    Column("id", Integer, primary_key=True),
    Column("label", String(20)),
    Column("start", DateTime(timezone=True), nullable=False),
    Column("end", DateTime(timezone=True), nullable=True),
)

# Existing records always have a start; the end may be open
RECORDS = {
    "current": (NOW - DAY, NOW + DAY),
    "current_open": (NOW - DAY, None),
    "future": (NOW + 30 * DAY, None),
    "far_future": (datetime(2099, 1, 1, tzinfo=UTC), None),
    "expired": (NOW - 10 * DAY, NOW - 5 * DAY),
    "bounded_later": (NOW + 2 * DAY, NOW + 4 * DAY),
}


@pytest.fixture()
async def windows_table(engine):
    async with engine.begin() as conn:
        await conn.run_sync(windows.metadata.create_all)
        await conn.execute(insert(windows), [
            {"label": label, "start": start, "end": end} for label, (start, end) in RECORDS.items()
        ])
    return engine


async def _labels(engine, clause) -> set:
    async with engine.connect() as conn:
        result = await conn.execute(select(windows.c.label).where(clause))
        return set(result.scalars().all())


async def test_validity_filter_default_selects_currently_valid(windows_table):
    clause = build_validity_filter(windows.c.start, windows.c.end, NOW)
    assert await _labels(windows_table, clause) == {"current", "current_open"}


async def test_validity_filter_include_future(windows_table):
    clause = build_validity_filter(windows.c.start, windows.c.end, NOW, include_future=True)
    assert await _labels(windows_table, clause) == {"future", "far_future", "bounded_later"}


async def test_validity_filter_include_expired(windows_table):
    clause = build_validity_filter(windows.c.start, windows.c.end, NOW, include_expired=True)
    assert await _labels(windows_table, clause) == {"expired"}


async def test_validity_filter_both_flags_selects_everything(windows_table):
    clause = build_validity_filter(
        windows.c.start, windows.c.end, NOW, include_future=True, include_expired=True
    )
    assert await _labels(windows_table, clause) == set(RECORDS)


CANDIDATES = [
    (None, None),
    (NOW + 3 * DAY, None),
    (None, NOW - 7 * DAY),
    (NOW - 6 * DAY, NOW - DAY / 2),
    (NOW + DAY / 2, NOW + 3 * DAY),
    (NOW + 5 * DAY, NOW + 6 * DAY),
    (NOW - 20 * DAY, NOW - 11 * DAY),
]


@pytest.mark.parametrize("candidate", CANDIDATES)
async def test_overlap_filter_agrees_with_do_periods_overlap(windows_table, candidate):
    start, end = candidate
    expected = {
        label for label, (s, e) in RECORDS.items() if do_periods_overlap(s, e, start, end)
    }
    assert await _labels(windows_table, overlap_filter(windows.c.start, windows.c.end, start, end)) == expected
