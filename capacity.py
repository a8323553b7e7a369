"""
Per-site (plantel) capacity guard for role assignments.

Pure decision functions over counts supplied by the caller. The occupancy
snapshot must be taken inside the same transaction as the insert that
follows (see Store.assign_user).
"""

from domain import Role, ValidationError, check_count


def _validated(limits, occupancy):
    check_count(limits.max_users, 'max_users')
    check_count(limits.max_teachers, 'max_teachers')
    check_count(limits.max_directors, 'max_directors')
    check_count(occupancy.users, 'users')
    check_count(occupancy.teachers, 'teachers')
    check_count(occupancy.directors, 'directors')
    check_count(occupancy.administrators, 'administrators')


def _has_room(current, ceiling):
    return ceiling is None or current < ceiling


def assignment_rejection_reason(limits, occupancy, role, administrators_consume_user_slot=False):
    """Return None when the assignment fits, otherwise why it does not."""
    role = Role.parse(role)
    _validated(limits, occupancy)

    if role is Role.TEACHER:
        if not _has_room(occupancy.teachers, limits.max_teachers):
            return f'Teacher limit reached ({occupancy.teachers}/{limits.max_teachers}).'
    elif role is Role.DIRECTOR:
        if not _has_room(occupancy.directors, limits.max_directors):
            return f'Director limit reached ({occupancy.directors}/{limits.max_directors}).'
    elif role is Role.ADMINISTRATOR:
        if not administrators_consume_user_slot:
            return None
    else:
        raise ValidationError(f'Unhandled role: {role!r}')

    if not _has_room(occupancy.users, limits.max_users):
        return f'User limit reached ({occupancy.users}/{limits.max_users}).'
    return None


def can_assign(limits, occupancy, role, administrators_consume_user_slot=False):
    """Both the role ceiling and the aggregate user ceiling must pass."""
    reason = assignment_rejection_reason(
        limits,
        occupancy,
        role,
        administrators_consume_user_slot=administrators_consume_user_slot,
    )
    return reason is None


def remaining_capacity(limits, occupancy):
    """Free slots per ceiling; None means the ceiling is not configured."""
    _validated(limits, occupancy)

    def remaining(current, ceiling):
        if ceiling is None:
            return None
        return max(0, ceiling - current)

    return {
        'users': remaining(occupancy.users, limits.max_users),
        'teachers': remaining(occupancy.teachers, limits.max_teachers),
        'directors': remaining(occupancy.directors, limits.max_directors),
    }
