from datetime import date, datetime, timedelta

import pytest

from domain import NO_GRADES, UNDEFINED, Activity, ActivityKind, AttendanceRecord, AttendanceStatus, Grade, ValidationError
from risk import (
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    assess_student_risk,
    build_risk_report,
    compute_activity_distribution,
    compute_grading_progress,
    compute_plantel_overview,
    group_label,
    upcoming_activities,
)

TODAY = date(2025, 3, 10)
T0 = datetime(2025, 3, 1, 9, 0)

GROUPS = [
    {"id": "g1", "name": "A", "grade": 3},
    {"id": "g2", "name": "B", "grade": 3},
]
ACTIVITIES = [
    Activity(id="a1", group_id="g1", name="Exam", kind=ActivityKind.EXAM, due_date=TODAY - timedelta(days=2)),
    Activity(id="a2", group_id="g2", name="Project", kind=ActivityKind.PROJECT, due_date=TODAY + timedelta(days=3)),
]


def grade(activity_id, student_id, score):
    return Grade(id=f"{activity_id}-{student_id}", activity_id=activity_id, student_id=student_id,
                 score=score, updated_at=T0)


def attendance(student_id, statuses):
    return [
        AttendanceRecord(
            id=f"{student_id}-{i}",
            student_id=student_id,
            group_id="g1",
            date=TODAY - timedelta(days=i),
            status=AttendanceStatus.parse(status),
            recorded_at=T0 + timedelta(days=i),
        )
        for i, status in enumerate(statuses)
    ]


def test_assess_low_attendance_is_high_risk():
    level, factors = assess_student_risk(9.0, 75.0, 0)
    assert level == RISK_HIGH
    assert factors == ("Critically low attendance",)


def test_assess_borderline_values_are_medium():
    level, factors = assess_student_risk(7.0, 85.0, 2)
    assert level == RISK_MEDIUM
    assert factors == ("Irregular attendance", "Low performance", "Behaviour incidents")


def test_assess_missing_data_adds_no_factor():
    assert assess_student_risk(NO_GRADES, UNDEFINED, 0) == (RISK_LOW, ())


def test_assess_many_incidents_is_high_risk():
    level, factors = assess_student_risk(9.5, 100.0, 4)
    assert level == RISK_HIGH
    assert "Multiple behaviour incidents" in factors


def test_risk_report_orders_high_risk_first():
    students = [
        {"id": "s1", "name": "Ana", "group_id": "g1"},
        {"id": "s2", "name": "Luis", "group_id": "g1"},
        {"id": "s3", "name": "Eva", "group_id": "g2"},
    ]
    grades = [grade("a1", "s1", 9.5), grade("a1", "s2", 5.0)]
    records = attendance("s1", ["present"] * 10) + attendance("s2", ["present", "late", "absent", "present"])
    report = build_risk_report(students, GROUPS, ACTIVITIES, grades, records, {"s3": 1})

    assert report.total == 3
    assert [s.student_id for s in report.students] == ["s2", "s3", "s1"]
    assert report.high == 1
    assert report.medium == 1
    assert report.low == 1
    assert report.students[0].group_name == "3° A"
    assert report.students[0].attendance == pytest.approx(75.0)


def test_risk_report_isolates_invalid_grade():
    students = [
        {"id": "s1", "name": "Ana", "group_id": "g1"},
        {"id": "s2", "name": "Luis", "group_id": "g1"},
    ]
    grades = [grade("a1", "s1", 15), grade("a1", "s2", 8)]
    report = build_risk_report(students, GROUPS, ACTIVITIES, grades, [], {})
    assert "s1" in report.errors
    assert [s.student_id for s in report.students] == ["s2"]


def test_plantel_overview_general_average_and_groups():
    grades = [grade("a1", "s1", 9), grade("a1", "s2", 5), grade("a2", "s3", 8)]
    overview = compute_plantel_overview(GROUPS, ACTIVITIES, grades)
    assert overview.average == pytest.approx(22 / 3)
    assert overview.total_students == 3
    assert overview.students_at_risk == 1
    assert overview.best_group.group_id == "g2"
    assert overview.worst_group.group_id == "g1"


def test_plantel_overview_without_grades():
    overview = compute_plantel_overview(GROUPS, ACTIVITIES, [])
    assert overview.average is NO_GRADES
    assert overview.best_group is None


def test_activity_distribution_lists_every_kind():
    distribution = compute_activity_distribution(ACTIVITIES)
    assert distribution == {"exam": 1, "homework": 0, "project": 1, "participation": 0, "other": 0}


def test_grading_progress_reports_overdue_and_groups_behind():
    grades = [grade("a1", "s1", 9)]
    progress = compute_grading_progress(ACTIVITIES, grades, {"g1": ["s1", "s2"], "g2": ["s3"]}, TODAY)
    assert progress.pending_activities == 2
    assert progress.overdue_activities == 1
    assert progress.graded_percentage == pytest.approx(100 / 3)
    assert progress.groups_behind == (("g1", 1), ("g2", 1))


def test_upcoming_activities_within_window():
    upcoming = upcoming_activities(ACTIVITIES, TODAY)
    assert [u.activity_id for u in upcoming] == ["a2"]
    assert upcoming[0].days_remaining == 3
    assert upcoming_activities(ACTIVITIES, TODAY, days=1) == []


def test_upcoming_rejects_negative_window():
    with pytest.raises(ValidationError):
        upcoming_activities(ACTIVITIES, TODAY, days=-1)


def test_group_label_without_grade():
    assert group_label({"id": "g9", "name": "Mixto", "grade": None}) == "Mixto"
