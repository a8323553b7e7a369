"""
Plantel-level dashboards built on top of the grade-book and attendance
aggregators: general average, best/worst group, dropout-risk levels and
grading progress.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from attendance import compute_group_attendance_percentages
from domain import NO_GRADES, UNDEFINED, ActivityKind, ValidationError
from gradebook import DEFAULT_SCALE, compute_student_average, resolve_current_grades, validate_score

logger = logging.getLogger(__name__)

RISK_HIGH = 'high'
RISK_MEDIUM = 'medium'
RISK_LOW = 'low'
_RISK_RANK = {RISK_HIGH: 3, RISK_MEDIUM: 2, RISK_LOW: 1}


@dataclass(frozen=True)
class RiskThresholds:
    attendance_high: float = 80.0
    attendance_medium: float = 90.0
    average_medium: float = 7.5
    incidents_high: int = 3


@dataclass(frozen=True)
class StudentRisk:
    student_id: str
    name: str
    group_id: Optional[str]
    group_name: str
    average: object
    attendance: object
    incidents: int
    level: str
    factors: tuple = ()


@dataclass
class RiskReport:
    total: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    students: list = field(default_factory=list)
    errors: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GroupAverage:
    group_id: str
    name: str
    average: float


@dataclass
class PlantelOverview:
    average: object = NO_GRADES
    students_at_risk: int = 0
    total_students: int = 0
    best_group: Optional[GroupAverage] = None
    worst_group: Optional[GroupAverage] = None
    errors: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GradingProgress:
    pending_activities: int
    overdue_activities: int
    graded_percentage: object
    groups_behind: tuple = ()


@dataclass(frozen=True)
class UpcomingActivity:
    activity_id: str
    name: str
    kind: ActivityKind
    group_id: str
    due_date: object
    days_remaining: int


def group_label(group):
    """Display name for a group, e.g. '3° A'."""
    name = (group.get('name') or '').strip()
    grade = group.get('grade')
    if grade in (None, ''):
        return name or str(group.get('id', ''))
    return f'{grade}° {name}'.strip()


# ==================== DROPOUT RISK ====================

def assess_student_risk(average, attendance, incidents, scale=DEFAULT_SCALE, thresholds=RiskThresholds()):
    """Return (level, factors). Missing averages or attendance add no factor."""
    has_average = average is not NO_GRADES
    has_attendance = attendance is not UNDEFINED
    incidents = int(incidents or 0)

    level = RISK_LOW
    factors = []
    if has_attendance and attendance < thresholds.attendance_high:
        level = RISK_HIGH
        factors.append('Critically low attendance')
    if has_average and average < scale.passing:
        level = RISK_HIGH
        factors.append('Failing average')
    if incidents > thresholds.incidents_high:
        level = RISK_HIGH
        factors.append('Multiple behaviour incidents')

    if level != RISK_HIGH:
        if has_attendance and thresholds.attendance_high <= attendance < thresholds.attendance_medium:
            level = RISK_MEDIUM
            factors.append('Irregular attendance')
        if has_average and scale.passing <= average < thresholds.average_medium:
            level = RISK_MEDIUM
            factors.append('Low performance')
        if 1 <= incidents <= thresholds.incidents_high:
            level = RISK_MEDIUM
            factors.append('Behaviour incidents')
    return level, tuple(factors)


def _risk_sort_key(student):
    no_average = student.average is NO_GRADES
    return (-_RISK_RANK[student.level], no_average, 0.0 if no_average else student.average)


def build_risk_report(students, groups, activities, grades, records, incidents,
                      scale=DEFAULT_SCALE, thresholds=RiskThresholds(), count_late_as_present=True):
    """Risk level for every student of a plantel.

    ``students`` are dicts with ``id``, ``name`` and ``group_id``;
    ``incidents`` maps student id to the number of behaviour incidents.
    Late arrivals count as attended by default, as the dashboard always did.
    """
    groups_by_id = {g['id']: g for g in groups}
    activities_by_group = {}
    for activity in activities:
        activities_by_group.setdefault(activity.group_id, []).append(activity)
    attendance = compute_group_attendance_percentages(records, count_late_as_present=count_late_as_present)

    report = RiskReport()
    for student in students:
        student_id = student['id']
        group_id = student.get('group_id')
        try:
            average = compute_student_average(
                activities_by_group.get(group_id, []), grades, student_id, scale
            )
        except ValidationError as exc:
            logger.warning('Risk skipped for student %s: %s', student_id, exc)
            report.errors[student_id] = str(exc)
            continue
        student_attendance = attendance.get(student_id, UNDEFINED)
        count = int(incidents.get(student_id, 0) or 0)
        level, factors = assess_student_risk(average, student_attendance, count, scale, thresholds)
        group = groups_by_id.get(group_id)
        report.students.append(StudentRisk(
            student_id=student_id,
            name=student.get('name', ''),
            group_id=group_id,
            group_name=group_label(group) if group else 'No group',
            average=average,
            attendance=student_attendance,
            incidents=count,
            level=level,
            factors=factors,
        ))

    report.students.sort(key=_risk_sort_key)
    report.total = len(report.students)
    report.high = sum(1 for s in report.students if s.level == RISK_HIGH)
    report.medium = sum(1 for s in report.students if s.level == RISK_MEDIUM)
    report.low = sum(1 for s in report.students if s.level == RISK_LOW)
    return report


# ==================== PLANTEL OVERVIEW ====================

def compute_plantel_overview(groups, activities, grades, scale=DEFAULT_SCALE):
    """General average, students below passing and best/worst group."""
    overview = PlantelOverview()
    groups_by_id = {g['id']: g for g in groups}
    live = {a.id: a for a in activities if not a.is_deleted and a.group_id in groups_by_id}

    scores_by_student = {}
    for (activity_id, student_id), grade in resolve_current_grades(
        g for g in grades if g.activity_id in live
    ).items():
        if grade.score is None:
            continue
        scores_by_student.setdefault(student_id, []).append((live[activity_id].group_id, grade.score))

    all_scores = []
    scores_by_group = {}
    for student_id, entries in scores_by_student.items():
        try:
            checked = [(group_id, validate_score(score, scale)) for group_id, score in entries]
        except ValidationError as exc:
            logger.warning('Overview skipped student %s: %s', student_id, exc)
            overview.errors[student_id] = str(exc)
            continue
        values = [score for _group_id, score in checked]
        all_scores.extend(values)
        if sum(values) / len(values) < scale.passing:
            overview.students_at_risk += 1
        overview.total_students += 1
        for group_id, score in checked:
            scores_by_group.setdefault(group_id, []).append(score)

    if all_scores:
        overview.average = sum(all_scores) / len(all_scores)

    ranked = sorted(
        (
            GroupAverage(group_id=group_id, name=group_label(groups_by_id[group_id]),
                         average=sum(values) / len(values))
            for group_id, values in scores_by_group.items()
        ),
        key=lambda g: (-g.average, g.name),
    )
    if ranked:
        overview.best_group = ranked[0]
        overview.worst_group = ranked[-1]
    return overview


def compute_activity_distribution(activities):
    """Number of live activities per kind (every kind is present)."""
    distribution = {kind.value: 0 for kind in ActivityKind}
    for activity in activities:
        if activity.is_deleted:
            continue
        distribution[ActivityKind.parse(activity.kind).value] += 1
    return distribution


def compute_grading_progress(activities, grades, roster_by_group, today):
    """How much of the expected grading is done.

    ``roster_by_group`` maps group id to the student ids of that group. An
    activity is pending while some rostered student has no score for it,
    and overdue when it is pending past its due date.
    """
    current = resolve_current_grades(grades)
    pending = 0
    overdue = 0
    expected = 0
    graded = 0
    behind = {}
    for activity in activities:
        if activity.is_deleted:
            continue
        roster = roster_by_group.get(activity.group_id, ())
        done = 0
        for student_id in roster:
            grade = current.get((activity.id, student_id))
            if grade is not None and grade.score is not None:
                done += 1
        expected += len(roster)
        graded += done
        if done < len(roster):
            pending += 1
            behind[activity.group_id] = behind.get(activity.group_id, 0) + 1
            if activity.due_date is not None and activity.due_date < today:
                overdue += 1

    percentage = graded / expected * 100 if expected else UNDEFINED
    groups_behind = tuple(sorted(behind.items(), key=lambda item: (-item[1], str(item[0]))))
    return GradingProgress(
        pending_activities=pending,
        overdue_activities=overdue,
        graded_percentage=percentage,
        groups_behind=groups_behind,
    )


def upcoming_activities(activities, today, days=7):
    """Live activities due between today and ``days`` ahead, soonest first."""
    if days < 0:
        raise ValidationError(f'Window cannot be negative, got {days}')
    horizon = today + timedelta(days=days)
    upcoming = [
        UpcomingActivity(
            activity_id=a.id,
            name=a.name,
            kind=a.kind,
            group_id=a.group_id,
            due_date=a.due_date,
            days_remaining=(a.due_date - today).days,
        )
        for a in activities
        if not a.is_deleted and a.due_date is not None and today <= a.due_date <= horizon
    ]
    upcoming.sort(key=lambda u: (u.due_date, u.name))
    return upcoming
