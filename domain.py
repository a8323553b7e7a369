"""
Shared domain types for the EduPlanner analytics core.

Rows coming back from the database are turned into these frozen
dataclasses before any aggregation happens, so the aggregators never see
raw role/status strings.
"""

import enum
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


# ==================== ERRORS ====================

class EduPlannerError(Exception):
    """Base class for every error raised by the analytics core."""


class ValidationError(EduPlannerError, ValueError):
    """Input outside its defined domain (score, weight, percentage, count)."""


class NotFoundError(EduPlannerError, LookupError):
    """A referenced activity, student or site is not in the supplied data."""


class CapacityExceededError(EduPlannerError):
    """A site ceiling rejects the requested role assignment."""


class AssignmentConflictError(EduPlannerError):
    """The user already holds (or does not hold) the assignment being changed."""


# ==================== SENTINELS ====================

class _NoData:
    """Singleton marker for a defined "no data" outcome, distinct from zero."""

    __slots__ = ('_name',)

    def __init__(self, name):
        self._name = name

    def __repr__(self):
        return self._name

    def __reduce__(self):
        return self._name


NO_GRADES = _NoData('NO_GRADES')
UNDEFINED = _NoData('UNDEFINED')

PLACEHOLDER = '—'


def is_missing(value):
    return value is NO_GRADES or value is UNDEFINED


# ==================== ENUMS ====================

class _ParsedEnum(enum.Enum):
    """Enum that also accepts the legacy Spanish values stored by the app."""

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        key = (value or '').strip().lower() if isinstance(value, str) else value
        for member in cls:
            if key == member.value or key in cls._aliases().get(member, ()):
                return member
        raise ValidationError(f'Unknown {cls.__name__} value: {value!r}')

    @classmethod
    def _aliases(cls):
        return {}


class Role(_ParsedEnum):
    TEACHER = 'teacher'
    DIRECTOR = 'director'
    ADMINISTRATOR = 'administrator'

    @classmethod
    def _aliases(cls):
        return {
            cls.TEACHER: ('profesor',),
            cls.DIRECTOR: (),
            cls.ADMINISTRATOR: ('administrador', 'admin'),
        }

    @property
    def storage_value(self):
        """Value written to user_plantel_assignments.role."""
        if self is Role.TEACHER:
            return 'profesor'
        if self is Role.DIRECTOR:
            return 'director'
        if self is Role.ADMINISTRATOR:
            return 'administrador'
        raise ValidationError(f'Unhandled role: {self!r}')


class AttendanceStatus(_ParsedEnum):
    PRESENT = 'present'
    ABSENT = 'absent'
    LATE = 'late'
    EXCUSED = 'excused'

    @classmethod
    def _aliases(cls):
        return {
            cls.PRESENT: ('presente',),
            cls.ABSENT: ('ausente',),
            cls.LATE: ('retardo',),
            cls.EXCUSED: ('justificado',),
        }


class ActivityKind(_ParsedEnum):
    EXAM = 'exam'
    HOMEWORK = 'homework'
    PROJECT = 'project'
    PARTICIPATION = 'participation'
    OTHER = 'other'

    @classmethod
    def _aliases(cls):
        return {
            cls.EXAM: ('examen',),
            cls.HOMEWORK: ('tarea',),
            cls.PROJECT: ('proyecto',),
            cls.PARTICIPATION: ('participacion', 'participación'),
            cls.OTHER: ('otro',),
        }


# ==================== RECORDS ====================

@dataclass(frozen=True)
class GradeScale:
    minimum: float = 0.0
    maximum: float = 10.0
    passing: float = 6.0

    def __post_init__(self):
        if not self.minimum < self.maximum:
            raise ValidationError(f'Invalid grade scale: {self.minimum}..{self.maximum}')
        if not self.minimum <= self.passing <= self.maximum:
            raise ValidationError(f'Passing grade {self.passing} is outside the scale')


@dataclass(frozen=True)
class Activity:
    id: str
    group_id: str
    name: str
    kind: ActivityKind = ActivityKind.OTHER
    weight: float = 0.0
    due_date: Optional[date] = None
    exam_id: Optional[str] = None
    lesson_plan_id: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self):
        return self.deleted_at is not None


@dataclass(frozen=True)
class Grade:
    id: str
    activity_id: str
    student_id: str
    score: Optional[float]
    updated_at: datetime
    feedback: Optional[str] = None


@dataclass(frozen=True)
class AttendanceRecord:
    id: str
    student_id: str
    group_id: str
    date: date
    status: AttendanceStatus
    recorded_at: datetime
    note: Optional[str] = None


@dataclass(frozen=True)
class PlantelLimits:
    plantel_id: str
    max_users: Optional[int] = None
    max_teachers: Optional[int] = None
    max_directors: Optional[int] = None


@dataclass(frozen=True)
class Occupancy:
    users: int = 0
    teachers: int = 0
    directors: int = 0
    administrators: int = 0


@dataclass(frozen=True)
class Assignment:
    id: str
    user_id: str
    plantel_id: str
    role: Role
    active: bool
    assigned_at: Optional[datetime] = None
    assigned_by: Optional[str] = None


# ==================== HELPERS ====================

def check_number(value, label):
    """Return value as float, rejecting bools, NaN and non-numeric input."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f'{label} must be numeric, got {value!r}')
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        raise ValidationError(f'{label} must be a finite number, got {value!r}')
    return value


def check_count(value, label):
    """Validate a non-negative integer count (None passes through)."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'{label} must be an integer, got {value!r}')
    if value < 0:
        raise ValidationError(f'{label} cannot be negative, got {value}')
    return value


def round_half_up(value, digits=0):
    """Round like the dashboards do (0.5 goes up), not banker's rounding."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor
