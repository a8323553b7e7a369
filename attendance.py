"""
Attendance aggregation over raw attendance records.

Records are collapsed to one per (student, date) before anything is
counted; the latest ``recorded_at`` wins.
"""

from dataclasses import dataclass
from typing import Optional

from domain import PLACEHOLDER, UNDEFINED, AttendanceStatus, ValidationError, round_half_up


@dataclass(frozen=True)
class DailySummary:
    date: object
    total: int
    present: int
    absent: int
    late: int
    excused: int
    percentage: object

    @property
    def display_percentage(self):
        return format_percentage(self.percentage)


@dataclass(frozen=True)
class RosterAttendance:
    student_id: str
    name: str
    list_number: Optional[int]
    status: Optional[AttendanceStatus]
    record_id: Optional[str] = None
    note: Optional[str] = None
    recorded_at: object = None

    @property
    def is_marked(self):
        return self.status is not None


def _record_sort_key(record):
    return (record.recorded_at, str(record.id))


def collapse_records(records):
    """Keep only the latest record for each (student_id, date) pair."""
    latest = {}
    for record in records:
        key = (record.student_id, record.date)
        kept = latest.get(key)
        if kept is None or _record_sort_key(record) > _record_sort_key(kept):
            latest[key] = record
    return list(latest.values())


def counts_as_attended(status, count_late_as_present=False):
    if status is AttendanceStatus.PRESENT:
        return True
    if status is AttendanceStatus.LATE:
        return count_late_as_present
    if status is AttendanceStatus.ABSENT or status is AttendanceStatus.EXCUSED:
        return False
    raise ValidationError(f'Unhandled attendance status: {status!r}')


def _percentage(attended, total):
    if total <= 0:
        return UNDEFINED
    return attended / total * 100


def compute_student_attendance_percentage(records, student_id, count_late_as_present=False):
    """Unrounded attendance percentage for one student, or UNDEFINED."""
    own = collapse_records(r for r in records if r.student_id == student_id)
    attended = sum(1 for r in own if counts_as_attended(r.status, count_late_as_present))
    return _percentage(attended, len(own))


def compute_group_attendance_percentages(records, count_late_as_present=False):
    """Percentage for every student that has at least one record."""
    totals = {}
    attended = {}
    for record in collapse_records(records):
        totals[record.student_id] = totals.get(record.student_id, 0) + 1
        if counts_as_attended(record.status, count_late_as_present):
            attended[record.student_id] = attended.get(record.student_id, 0) + 1
    return {
        student_id: _percentage(attended.get(student_id, 0), total)
        for student_id, total in totals.items()
    }


def _summarize(day, day_records, count_late_as_present):
    counts = {status: 0 for status in AttendanceStatus}
    for record in day_records:
        if record.status not in counts:
            raise ValidationError(f'Unhandled attendance status: {record.status!r}')
        counts[record.status] += 1
    total = len(day_records)
    attended = counts[AttendanceStatus.PRESENT]
    if count_late_as_present:
        attended += counts[AttendanceStatus.LATE]
    return DailySummary(
        date=day,
        total=total,
        present=counts[AttendanceStatus.PRESENT],
        absent=counts[AttendanceStatus.ABSENT],
        late=counts[AttendanceStatus.LATE],
        excused=counts[AttendanceStatus.EXCUSED],
        percentage=_percentage(attended, total),
    )


def compute_group_daily_summary(records, day, count_late_as_present=False):
    """Status breakdown for one date, counting only students with a record."""
    day_records = collapse_records(r for r in records if r.date == day)
    return _summarize(day, day_records, count_late_as_present)


def compute_historical_summary(records, limit=None, count_late_as_present=False):
    """One DailySummary per recorded date, most recent first."""
    by_date = {}
    for record in collapse_records(records):
        by_date.setdefault(record.date, []).append(record)
    history = [
        _summarize(day, by_date[day], count_late_as_present)
        for day in sorted(by_date, reverse=True)
    ]
    if limit is not None:
        if limit < 0:
            raise ValidationError(f'History limit cannot be negative, got {limit}')
        history = history[:limit]
    return history


def merge_roster(roster, records, day):
    """Join the group roster with the records of one day.

    ``roster`` is an iterable of dicts with ``id``, ``name`` and optional
    ``list_number``. Students without a record keep ``status=None``.
    """
    latest = {r.student_id: r for r in collapse_records(r for r in records if r.date == day)}
    rows = []
    for student in roster:
        record = latest.get(student['id'])
        rows.append(RosterAttendance(
            student_id=student['id'],
            name=student.get('name', ''),
            list_number=student.get('list_number'),
            status=record.status if record else None,
            record_id=record.id if record else None,
            note=record.note if record else None,
            recorded_at=record.recorded_at if record else None,
        ))
    return rows


def format_percentage(value):
    """Whole-percent display string; thresholds must use the raw value."""
    if value is UNDEFINED:
        return PLACEHOLDER
    return f'{int(round_half_up(value))}%'
