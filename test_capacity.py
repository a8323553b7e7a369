import pytest

from capacity import assignment_rejection_reason, can_assign, remaining_capacity
from domain import Occupancy, PlantelLimits, Role, ValidationError


def test_teacher_rejected_when_teacher_ceiling_is_full():
    limits = PlantelLimits("p1", max_users=50, max_teachers=10, max_directors=2)
    occupancy = Occupancy(users=30, teachers=10, directors=1)
    assert can_assign(limits, occupancy, Role.TEACHER) is False
    assert assignment_rejection_reason(limits, occupancy, Role.TEACHER) == "Teacher limit reached (10/10)."


def test_director_allowed_while_under_both_ceilings():
    limits = PlantelLimits("p1", max_users=50, max_teachers=10, max_directors=2)
    occupancy = Occupancy(users=30, teachers=10, directors=1)
    assert can_assign(limits, occupancy, Role.DIRECTOR) is True


def test_aggregate_user_ceiling_applies_to_every_limited_role():
    limits = PlantelLimits("p1", max_users=5, max_teachers=10, max_directors=2)
    occupancy = Occupancy(users=5, teachers=4, directors=1)
    assert can_assign(limits, occupancy, Role.TEACHER) is False
    assert "User limit" in assignment_rejection_reason(limits, occupancy, "director")


def test_missing_ceiling_means_unlimited():
    limits = PlantelLimits("p1")
    occupancy = Occupancy(users=500, teachers=400, directors=100)
    assert can_assign(limits, occupancy, Role.TEACHER) is True
    assert remaining_capacity(limits, occupancy) == {"users": None, "teachers": None, "directors": None}


def test_zero_ceiling_means_no_slots():
    limits = PlantelLimits("p1", max_directors=0)
    assert can_assign(limits, Occupancy(), Role.DIRECTOR) is False


def test_administrators_are_exempt_by_default():
    limits = PlantelLimits("p1", max_users=1, max_teachers=1, max_directors=1)
    occupancy = Occupancy(users=1, teachers=1, directors=1)
    assert can_assign(limits, occupancy, Role.ADMINISTRATOR) is True
    assert can_assign(
        limits, occupancy, Role.ADMINISTRATOR, administrators_consume_user_slot=True
    ) is False


def test_spanish_role_names_are_accepted():
    limits = PlantelLimits("p1", max_teachers=1)
    assert can_assign(limits, Occupancy(teachers=1, users=1), "profesor") is False


def test_unknown_role_is_rejected():
    with pytest.raises(ValidationError):
        can_assign(PlantelLimits("p1"), Occupancy(), "janitor")


def test_negative_count_is_rejected():
    with pytest.raises(ValidationError):
        can_assign(PlantelLimits("p1", max_users=3), Occupancy(users=-1), Role.TEACHER)


def test_remaining_capacity_never_goes_negative():
    limits = PlantelLimits("p1", max_users=10, max_teachers=3, max_directors=1)
    occupancy = Occupancy(users=4, teachers=5, directors=1)
    assert remaining_capacity(limits, occupancy) == {"users": 6, "teachers": 0, "directors": 0}
