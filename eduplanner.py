"""
EduPlanner - grading, attendance and site-capacity dashboards

Flask application exposing the grade-book, attendance and plantel
analytics as JSON for the teacher, director and administrator dashboards.
Sign-in is handled upstream; this app only reads the role, user and
plantel that the auth layer stores in the session.
"""

from flask import Flask, request, session, jsonify
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from wtforms import StringField, SelectField, validators
from datetime import date, datetime

import os
import logging
from dotenv import load_dotenv

from attendance import (
    compute_group_daily_summary,
    compute_historical_summary,
    compute_student_attendance_percentage,
    format_percentage,
    merge_roster,
)
from capacity import can_assign, remaining_capacity
from domain import (
    AssignmentConflictError,
    CapacityExceededError,
    GradeScale,
    NotFoundError,
    Role,
    ValidationError,
    is_missing,
)
from gradebook import compute_group_gradebook, format_average, grade_status
from risk import (
    build_risk_report,
    compute_activity_distribution,
    compute_grading_progress,
    compute_plantel_overview,
    upcoming_activities,
)
from store import Store

load_dotenv()

app = Flask(__name__)


def env_flag(name, default='0'):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes')


def safe_int(value, default):
    """Parse integer safely while preserving valid zero values."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def safe_float(value, default):
    """Parse float safely while preserving valid zero values."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


ALLOW_INSECURE_DEFAULTS = env_flag('ALLOW_INSECURE_DEFAULTS')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None

# Initialize CSRF Protection
csrf = CSRFProtect(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")

try:
    GRADE_SCALE = GradeScale(
        minimum=safe_float(os.environ.get('GRADE_SCALE_MIN'), 0),
        maximum=safe_float(os.environ.get('GRADE_SCALE_MAX'), 10),
        passing=safe_float(os.environ.get('PASSING_GRADE'), 6),
    )
except ValidationError as exc:
    raise RuntimeError(f"Invalid grading scale configuration: {exc}") from exc
ADMINS_CONSUME_USER_SLOT = env_flag('ADMINS_CONSUME_USER_SLOT')
COUNT_LATE_AS_PRESENT = env_flag('COUNT_LATE_AS_PRESENT')
HISTORY_DAYS_LIMIT = max(1, safe_int(os.environ.get('HISTORY_DAYS_LIMIT'), 30))
UPCOMING_DAYS = max(0, safe_int(os.environ.get('UPCOMING_DAYS'), 7))

# Set up logging
logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'), level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

app.config['STORE'] = Store(DATABASE_URL, administrators_consume_user_slot=ADMINS_CONSUME_USER_SLOT)

# Schema guards (can be disabled when the database is not reachable at import time).
if env_flag('RUN_STARTUP_CHECKS', '1'):
    app.config['STORE'].verify_required_db_guards(strict=env_flag('DB_GUARDS_STRICT'))
else:
    logging.warning("RUN_STARTUP_CHECKS is disabled. Ensure schema is already migrated before startup.")


def get_store():
    return app.config['STORE']

# ==================== FORMS ====================

ROLE_CHOICES = [(role.value, role.value.title()) for role in Role]


class AssignmentForm(FlaskForm):
    user_id = StringField('User', [validators.InputRequired(), validators.Length(max=64)])
    role = SelectField('Role', choices=ROLE_CHOICES)


class AssignmentStatusForm(FlaskForm):
    active = SelectField('Active', choices=[('1', 'Active'), ('0', 'Inactive')])

# ==================== SERIALIZATION ====================

def _number(value, digits=4):
    if is_missing(value):
        return None
    return round(float(value), digits)


def _iso(value):
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def serialize_average(value):
    return {
        'value': _number(value),
        'display': format_average(value),
        'status': grade_status(value, GRADE_SCALE),
    }


def serialize_percentage(value):
    return {'value': _number(value), 'display': format_percentage(value)}


def serialize_summary(summary):
    return {
        'date': _iso(summary.date),
        'total': summary.total,
        'present': summary.present,
        'absent': summary.absent,
        'late': summary.late,
        'excused': summary.excused,
        'percentage': serialize_percentage(summary.percentage),
    }


def serialize_assignment(assignment):
    return {
        'id': assignment.id,
        'user_id': assignment.user_id,
        'plantel_id': assignment.plantel_id,
        'role': assignment.role.value,
        'active': assignment.active,
        'assigned_at': _iso(assignment.assigned_at),
        'assigned_by': assignment.assigned_by,
    }

# ==================== ACCESS ====================

def session_role():
    """Role stored by the auth layer, or None when missing/unknown."""
    raw = session.get('role')
    if not raw:
        return None
    try:
        return Role.parse(raw)
    except ValidationError:
        logging.warning("Unknown session role %r", raw)
        return None


def forbidden(message='You do not have access to this resource.'):
    return jsonify({'error': message}), 403


def can_access_plantel(plantel_id):
    role = session_role()
    if role is Role.ADMINISTRATOR:
        return True
    if role is Role.DIRECTOR:
        return str(session.get('plantel_id') or '') == str(plantel_id)
    return False


def can_access_group(group):
    role = session_role()
    if role is Role.ADMINISTRATOR:
        return True
    if role is Role.DIRECTOR:
        return str(session.get('plantel_id') or '') == str(group['plantel_id'])
    if role is Role.TEACHER:
        return str(session.get('user_id') or '') == str(group['user_id'] or '')
    return False


def parse_day(value):
    """Parse a YYYY-MM-DD query argument; today when empty."""
    value = (value or '').strip()
    if not value:
        return date.today()
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f'Invalid date {value!r}; expected YYYY-MM-DD.')

# ==================== ERROR HANDLERS ====================

@app.errorhandler(ValidationError)
def validation_error(error):
    return jsonify({'error': str(error)}), 400


@app.errorhandler(NotFoundError)
def not_found_error(error):
    return jsonify({'error': str(error)}), 404


@app.errorhandler(CapacityExceededError)
def capacity_error(error):
    return jsonify({'error': str(error)}), 409


@app.errorhandler(AssignmentConflictError)
def assignment_conflict_error(error):
    return jsonify({'error': str(error)}), 409


@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    return jsonify({'error': 'Form token expired/invalid. Please retry your last action.'}), 400

# ==================== TEACHER ROUTES ====================

@app.route('/teacher/groups/<group_id>/gradebook')
def teacher_gradebook(group_id):
    """Per-student averages and per-activity statistics for one group."""
    store = get_store()
    group = store.get_group(group_id)
    if not can_access_group(group):
        return forbidden()

    weighted = request.args.get('weighted', '0').strip().lower() in ('1', 'true', 'yes')
    activities = store.list_activities(group_id)
    grades = store.list_grades_for_activities([a.id for a in activities])
    roster = store.list_roster(group_id)
    report = compute_group_gradebook(
        activities, grades, [s['id'] for s in roster], weighted=weighted, scale=GRADE_SCALE
    )

    students = []
    for student in roster:
        key = f"student:{student['id']}"
        students.append({
            'id': student['id'],
            'name': student['name'],
            'list_number': student['list_number'],
            'average': serialize_average(report.averages[student['id']]) if key not in report.errors else None,
            'error': report.errors.get(key),
        })

    activity_rows = []
    for activity in activities:
        stats = report.activity_stats.get(activity.id)
        activity_rows.append({
            'id': activity.id,
            'name': activity.name,
            'kind': activity.kind.value,
            'weight': activity.weight,
            'due_date': _iso(activity.due_date),
            'graded': stats.count if stats else None,
            'pending': stats.pending if stats else None,
            'mean_score': serialize_average(stats.mean_score) if stats else None,
            'error': report.errors.get(f'activity:{activity.id}'),
        })

    return jsonify({
        'group_id': group_id,
        'weighted': weighted,
        'scale': {'min': GRADE_SCALE.minimum, 'max': GRADE_SCALE.maximum, 'passing': GRADE_SCALE.passing},
        'students': students,
        'activities': activity_rows,
        'errors': report.errors,
    })


@app.route('/teacher/groups/<group_id>/attendance')
def teacher_attendance_day(group_id):
    """Roster with each student's status for one day, plus the day summary."""
    store = get_store()
    group = store.get_group(group_id)
    if not can_access_group(group):
        return forbidden()

    day = parse_day(request.args.get('date'))
    records = store.list_attendance(group_id, day)
    rows = merge_roster(store.list_roster(group_id), records, day)
    summary = compute_group_daily_summary(records, day, count_late_as_present=COUNT_LATE_AS_PRESENT)
    return jsonify({
        'group_id': group_id,
        'date': day.isoformat(),
        'summary': serialize_summary(summary),
        'unmarked': sum(1 for row in rows if not row.is_marked),
        'students': [
            {
                'id': row.student_id,
                'name': row.name,
                'list_number': row.list_number,
                'status': row.status.value if row.status else None,
                'note': row.note,
                'recorded_at': _iso(row.recorded_at),
            }
            for row in rows
        ],
    })


@app.route('/teacher/groups/<group_id>/attendance/history')
def teacher_attendance_history(group_id):
    """Per-date summaries, most recent first."""
    store = get_store()
    group = store.get_group(group_id)
    if not can_access_group(group):
        return forbidden()

    limit = safe_int(request.args.get('limit'), HISTORY_DAYS_LIMIT)
    history = compute_historical_summary(
        store.list_attendance(group_id), limit=limit, count_late_as_present=COUNT_LATE_AS_PRESENT
    )
    return jsonify({'group_id': group_id, 'history': [serialize_summary(s) for s in history]})


@app.route('/teacher/students/<student_id>/attendance')
def teacher_student_attendance(student_id):
    """Attendance percentage of one student within a group."""
    group_id = request.args.get('group_id', '').strip()
    if not group_id:
        raise ValidationError('group_id is required.')
    store = get_store()
    group = store.get_group(group_id)
    if not can_access_group(group):
        return forbidden()
    if student_id not in {s['id'] for s in store.list_roster(group_id)}:
        raise NotFoundError(f'Student {student_id} is not in group {group_id}.')

    percentage = compute_student_attendance_percentage(
        store.list_attendance(group_id), student_id, count_late_as_present=COUNT_LATE_AS_PRESENT
    )
    return jsonify({
        'student_id': student_id,
        'group_id': group_id,
        'percentage': serialize_percentage(percentage),
    })

# ==================== DIRECTOR ROUTES ====================

def _plantel_grading_data(store, plantel_id):
    groups = store.list_groups(plantel_id)
    activities = store.list_activities_for_groups([g['id'] for g in groups])
    grades = store.list_grades_for_activities([a.id for a in activities])
    students = store.list_students_for_plantel(plantel_id)
    return groups, activities, grades, students


@app.route('/director/planteles/<plantel_id>/overview')
def director_overview(plantel_id):
    """General average, best/worst group, grading progress and upcoming work."""
    if not can_access_plantel(plantel_id):
        return forbidden()
    store = get_store()
    groups, activities, grades, students = _plantel_grading_data(store, plantel_id)

    overview = compute_plantel_overview(groups, activities, grades, scale=GRADE_SCALE)
    roster_by_group = {}
    for student in students:
        roster_by_group.setdefault(student['group_id'], []).append(student['id'])
    today = date.today()
    progress = compute_grading_progress(activities, grades, roster_by_group, today)
    group_names = {g['id']: g['name'] for g in groups}

    def group_average(entry):
        if entry is None:
            return None
        return {'group_id': entry.group_id, 'name': entry.name, 'average': serialize_average(entry.average)}

    return jsonify({
        'plantel_id': plantel_id,
        'average': serialize_average(overview.average),
        'students_at_risk': overview.students_at_risk,
        'total_students': overview.total_students,
        'best_group': group_average(overview.best_group),
        'worst_group': group_average(overview.worst_group),
        'distribution': compute_activity_distribution(activities),
        'grading_progress': {
            'pending_activities': progress.pending_activities,
            'overdue_activities': progress.overdue_activities,
            'graded_percentage': serialize_percentage(progress.graded_percentage),
            'groups_behind': [
                {'group_id': group_id, 'name': group_names.get(group_id, ''), 'pending': pending}
                for group_id, pending in progress.groups_behind
            ],
        },
        'upcoming': [
            {
                'id': item.activity_id,
                'name': item.name,
                'kind': item.kind.value,
                'group': group_names.get(item.group_id, ''),
                'due_date': _iso(item.due_date),
                'days_remaining': item.days_remaining,
            }
            for item in upcoming_activities(activities, today, days=UPCOMING_DAYS)
        ],
        'errors': overview.errors,
    })


@app.route('/director/planteles/<plantel_id>/risk')
def director_risk(plantel_id):
    """Dropout-risk level for every student of the plantel."""
    if not can_access_plantel(plantel_id):
        return forbidden()
    store = get_store()
    groups, activities, grades, students = _plantel_grading_data(store, plantel_id)
    student_ids = [s['id'] for s in students]
    records = store.list_attendance_for_students(student_ids)
    incidents = store.count_behaviour_incidents(student_ids)
    report = build_risk_report(students, groups, activities, grades, records, incidents, scale=GRADE_SCALE)

    return jsonify({
        'plantel_id': plantel_id,
        'total': report.total,
        'high': report.high,
        'medium': report.medium,
        'low': report.low,
        'students': [
            {
                'id': s.student_id,
                'name': s.name,
                'group': s.group_name,
                'average': serialize_average(s.average),
                'attendance': serialize_percentage(s.attendance),
                'incidents': s.incidents,
                'level': s.level,
                'factors': list(s.factors),
            }
            for s in report.students
        ],
        'errors': report.errors,
    })

# ==================== ADMIN ROUTES ====================

@app.route('/admin/planteles/<plantel_id>/capacity')
def admin_plantel_capacity(plantel_id):
    """Ceilings, live occupancy and which roles can still be assigned."""
    if session_role() is not Role.ADMINISTRATOR:
        return forbidden()
    limits, occupancy = get_store().get_capacity_snapshot(plantel_id)
    return jsonify({
        'plantel_id': plantel_id,
        'limits': {
            'users': limits.max_users,
            'teachers': limits.max_teachers,
            'directors': limits.max_directors,
        },
        'occupancy': {
            'users': occupancy.users,
            'teachers': occupancy.teachers,
            'directors': occupancy.directors,
            'administrators': occupancy.administrators,
        },
        'remaining': remaining_capacity(limits, occupancy),
        'can_assign': {
            role.value: can_assign(limits, occupancy, role, administrators_consume_user_slot=ADMINS_CONSUME_USER_SLOT)
            for role in Role
        },
    })


@app.route('/admin/planteles/<plantel_id>/assignments', methods=['POST'])
def admin_assign_user(plantel_id):
    """Assign a user to the plantel, checked against its ceilings atomically."""
    if session_role() is not Role.ADMINISTRATOR:
        return forbidden()
    form = AssignmentForm()
    if not form.validate_on_submit():
        return jsonify({'error': 'Invalid assignment request.', 'fields': form.errors}), 400

    assignment = get_store().assign_user(
        form.user_id.data.strip(),
        plantel_id,
        Role.parse(form.role.data),
        assigned_by=session.get('user_id'),
    )
    logging.info("Admin %s assigned %s to plantel %s", session.get('user_id'), assignment.user_id, plantel_id)
    return jsonify(serialize_assignment(assignment)), 201


@app.route('/admin/planteles/<plantel_id>/assignments/<user_id>/active', methods=['POST'])
def admin_toggle_assignment(plantel_id, user_id):
    """Activate or deactivate an existing assignment."""
    if session_role() is not Role.ADMINISTRATOR:
        return forbidden()
    form = AssignmentStatusForm()
    if not form.validate_on_submit():
        return jsonify({'error': 'Invalid status request.', 'fields': form.errors}), 400

    assignment = get_store().set_assignment_active(user_id, plantel_id, form.active.data == '1')
    return jsonify(serialize_assignment(assignment))


@app.route('/csrf-token')
def csrf_token():
    """Token for the X-CSRFToken header of the admin POST routes."""
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/health')
def health():
    return jsonify({'status': 'ok'})
