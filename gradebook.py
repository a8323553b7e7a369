"""
Grade-book aggregation for one class group.

Averages are computed from the *current* grade of each (activity, student)
pair; older duplicate rows are ignored. An ungraded activity (score None)
is left out of both the numerator and the denominator.
"""

import logging
from dataclasses import dataclass, field

from domain import (
    NO_GRADES,
    PLACEHOLDER,
    GradeScale,
    NotFoundError,
    ValidationError,
    check_number,
    round_half_up,
)

logger = logging.getLogger(__name__)

DEFAULT_SCALE = GradeScale()


@dataclass(frozen=True)
class ActivityStats:
    activity_id: str
    count: int
    mean_score: object
    pending: int = 0


@dataclass
class GradebookReport:
    averages: dict = field(default_factory=dict)
    activity_stats: dict = field(default_factory=dict)
    errors: dict = field(default_factory=dict)


def _grade_sort_key(grade):
    return (grade.updated_at, str(grade.id))


def resolve_current_grades(grades):
    """Map (activity_id, student_id) to the most recently updated grade."""
    current = {}
    for grade in grades:
        key = (grade.activity_id, grade.student_id)
        kept = current.get(key)
        if kept is None or _grade_sort_key(grade) > _grade_sort_key(kept):
            current[key] = grade
    return current


def validate_score(score, scale=DEFAULT_SCALE):
    """Return score as float if it lies on the scale, else raise ValidationError."""
    value = check_number(score, 'Score')
    if value < scale.minimum or value > scale.maximum:
        raise ValidationError(
            f'Score {value:g} is outside the grading scale {scale.minimum:g}-{scale.maximum:g}'
        )
    return value


def validate_weight(weight):
    value = check_number(weight, 'Activity weight')
    if value < 0 or value > 100:
        raise ValidationError(f'Activity weight {value:g} must be between 0 and 100')
    return value


def _live_activities(activities):
    return [a for a in activities if not a.is_deleted]


def _student_scores(activities, grades, student_id, scale):
    """Yield (activity, score) for every graded activity of one student."""
    current = resolve_current_grades(g for g in grades if g.student_id == student_id)
    for activity in _live_activities(activities):
        grade = current.get((activity.id, student_id))
        if grade is None or grade.score is None:
            continue
        yield activity, validate_score(grade.score, scale)


def compute_student_average(activities, grades, student_id, scale=DEFAULT_SCALE):
    """Simple mean of the student's graded activities, or NO_GRADES.

    Activity weights are not applied here; use
    compute_weighted_student_average for that.
    """
    scores = [score for _activity, score in _student_scores(activities, grades, student_id, scale)]
    if not scores:
        return NO_GRADES
    return sum(scores) / len(scores)


def compute_weighted_student_average(activities, grades, student_id, scale=DEFAULT_SCALE):
    """Weighted mean over graded activities, using each activity's weight."""
    total = 0.0
    total_weight = 0.0
    for activity, score in _student_scores(activities, grades, student_id, scale):
        weight = validate_weight(activity.weight)
        total += score * weight
        total_weight += weight
    if total_weight <= 0:
        return NO_GRADES
    return total / total_weight


def compute_activity_stats(grades, activity_id=None, activities=None, scale=DEFAULT_SCALE):
    """Count and mean of current scores for one activity across students."""
    if activity_id is not None and activities is not None:
        if not any(a.id == activity_id and not a.is_deleted for a in activities):
            raise NotFoundError(f'Activity {activity_id} is not part of this group')
    if activity_id is not None:
        grades = [g for g in grades if g.activity_id == activity_id]
    current = list(resolve_current_grades(grades).values())
    if activity_id is None:
        activity_ids = {g.activity_id for g in current}
        if len(activity_ids) > 1:
            raise ValidationError('Grades for more than one activity were supplied; pass activity_id')
        activity_id = next(iter(activity_ids), None)

    scores = [validate_score(g.score, scale) for g in current if g.score is not None]
    pending = sum(1 for g in current if g.score is None)
    mean = sum(scores) / len(scores) if scores else NO_GRADES
    return ActivityStats(activity_id=activity_id, count=len(scores), mean_score=mean, pending=pending)


def compute_group_gradebook(activities, grades, student_ids, weighted=False, scale=DEFAULT_SCALE):
    """Averages for every student plus per-activity stats.

    A student (or activity) with an invalid grade is reported in ``errors``
    and does not stop the others from being computed.
    """
    report = GradebookReport()
    average = compute_weighted_student_average if weighted else compute_student_average
    for student_id in student_ids:
        try:
            report.averages[student_id] = average(activities, grades, student_id, scale)
        except ValidationError as exc:
            logger.warning('Skipping average for student %s: %s', student_id, exc)
            report.errors[f'student:{student_id}'] = str(exc)

    for activity in _live_activities(activities):
        try:
            report.activity_stats[activity.id] = compute_activity_stats(grades, activity.id, scale=scale)
        except ValidationError as exc:
            logger.warning('Skipping stats for activity %s: %s', activity.id, exc)
            report.errors[f'activity:{activity.id}'] = str(exc)
    return report


def grade_status(average, scale=DEFAULT_SCALE):
    """Get pass/fail status from an average; None when there are no grades."""
    if average is NO_GRADES:
        return None
    return 'pass' if float(average) >= scale.passing else 'fail'


def format_average(value):
    if value is NO_GRADES:
        return PLACEHOLDER
    return f'{round_half_up(value, 1):.1f}'
