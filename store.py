"""
PostgreSQL persistence collaborator.

Implements the read contracts the aggregators depend on (activities,
grades, attendance, occupancy) and the role-assignment sink. A Store is
constructed explicitly and handed to whoever needs it; there is no
module-level connection.
"""

import logging
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import DictCursor

from attendance import merge_roster
from capacity import assignment_rejection_reason
from domain import (
    Activity,
    ActivityKind,
    Assignment,
    AssignmentConflictError,
    AttendanceRecord,
    AttendanceStatus,
    CapacityExceededError,
    Grade,
    NotFoundError,
    Occupancy,
    PlantelLimits,
    Role,
)

logger = logging.getLogger(__name__)

BEHAVIOUR_INCIDENT_TYPE = 'comportamiento'

REQUIRED_INDEXES = {
    'uq_active_user_plantel_assignment',
}
REQUIRED_CONSTRAINTS = {
    'fk_assignments_plantel',
    'ck_assignments_role',
}


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def _opt_str(value):
    return None if value is None else str(value)


def _opt_float(value):
    return None if value is None else float(value)


def _opt_int(value):
    return None if value is None else int(value)


def activity_from_row(row):
    return Activity(
        id=str(row['id']),
        group_id=str(row['grupo_id']),
        name=row['nombre'] or '',
        kind=ActivityKind.parse(row['tipo']),
        weight=float(row['ponderacion'] or 0),
        due_date=row['fecha_entrega'],
        exam_id=_opt_str(row['examen_id']),
        lesson_plan_id=_opt_str(row['planeacion_id']),
        deleted_at=row['deleted_at'],
    )


def grade_from_row(row):
    return Grade(
        id=str(row['id']),
        activity_id=str(row['actividad_id']),
        student_id=str(row['alumno_id']),
        score=_opt_float(row['calificacion']),
        updated_at=row['updated_at'],
        feedback=row['retroalimentacion'],
    )


def attendance_from_row(row):
    return AttendanceRecord(
        id=str(row['id']),
        student_id=str(row['alumno_id']),
        group_id=str(row['grupo_id']),
        date=row['fecha'],
        status=AttendanceStatus.parse(row['estado']),
        recorded_at=row['hora_registro'],
        note=row['notas'],
    )


def assignment_from_row(row):
    return Assignment(
        id=str(row['id']),
        user_id=str(row['user_id']),
        plantel_id=str(row['plantel_id']),
        role=Role.parse(row['role']),
        active=bool(row['activo']),
        assigned_at=row['assigned_at'],
        assigned_by=_opt_str(row['assigned_by']),
    )


ACTIVITY_COLUMNS = '''id, grupo_id, nombre, tipo, fecha_entrega, ponderacion,
                      examen_id, planeacion_id, deleted_at'''
GRADE_COLUMNS = 'id, actividad_id, alumno_id, calificacion, retroalimentacion, updated_at'
ATTENDANCE_COLUMNS = 'id, alumno_id, grupo_id, fecha, estado, notas, hora_registro'
ASSIGNMENT_COLUMNS = 'id, user_id, plantel_id, role, activo, assigned_at, assigned_by'


class Store:
    """Data access for the analytics core, one connection per call."""

    def __init__(self, database_url, connect=None, connect_timeout=10, administrators_consume_user_slot=False):
        self.database_url = database_url
        self.connect_timeout = connect_timeout
        self.administrators_consume_user_slot = administrators_consume_user_slot
        self._connect = connect

    def get_db(self):
        """Create a PostgreSQL DB connection."""
        if self._connect is not None:
            return self._connect()
        return psycopg2.connect(self.database_url, cursor_factory=DictCursor, connect_timeout=self.connect_timeout)

    @contextmanager
    def connection(self, commit=False):
        """Connection context manager; rolls back on error, commits on request."""
        conn = self.get_db()
        try:
            yield conn
            if commit:
                conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _fetch_all(self, query, params=None):
        with self.connection() as conn:
            c = conn.cursor()
            db_execute(c, query, params)
            return c.fetchall()

    # ==================== ACTIVITY / GRADE SOURCE ====================

    def list_activities(self, group_id):
        """Non-deleted activities of one group."""
        rows = self._fetch_all(
            f'''SELECT {ACTIVITY_COLUMNS}
                FROM actividades_evaluables
                WHERE grupo_id = ? AND deleted_at IS NULL
                ORDER BY fecha_entrega NULLS LAST, created_at''',
            (group_id,),
        )
        return [activity_from_row(row) for row in rows]

    def list_activities_for_groups(self, group_ids):
        group_ids = list(group_ids)
        if not group_ids:
            return []
        rows = self._fetch_all(
            f'''SELECT {ACTIVITY_COLUMNS}
                FROM actividades_evaluables
                WHERE grupo_id = ANY(?) AND deleted_at IS NULL''',
            (group_ids,),
        )
        return [activity_from_row(row) for row in rows]

    def list_grades_for_activities(self, activity_ids):
        """Every grade row for the activities, historical duplicates included."""
        activity_ids = list(activity_ids)
        if not activity_ids:
            return []
        rows = self._fetch_all(
            f'''SELECT {GRADE_COLUMNS}
                FROM calificaciones
                WHERE actividad_id = ANY(?)''',
            (activity_ids,),
        )
        return [grade_from_row(row) for row in rows]

    def list_grades_for_student(self, student_id):
        rows = self._fetch_all(
            f'SELECT {GRADE_COLUMNS} FROM calificaciones WHERE alumno_id = ?',
            (student_id,),
        )
        return [grade_from_row(row) for row in rows]

    # ==================== ATTENDANCE SOURCE ====================

    def list_attendance(self, group_id, day=None):
        """Attendance rows of a group, optionally for one date only."""
        where = ['grupo_id = ?']
        params = [group_id]
        if day is not None:
            where.append('fecha = ?')
            params.append(day)
        rows = self._fetch_all(
            f'''SELECT {ATTENDANCE_COLUMNS}
                FROM asistencia
                WHERE {' AND '.join(where)}
                ORDER BY fecha DESC, hora_registro''',
            tuple(params),
        )
        return [attendance_from_row(row) for row in rows]

    def list_attendance_for_students(self, student_ids):
        student_ids = list(student_ids)
        if not student_ids:
            return []
        rows = self._fetch_all(
            f'SELECT {ATTENDANCE_COLUMNS} FROM asistencia WHERE alumno_id = ANY(?)',
            (student_ids,),
        )
        return [attendance_from_row(row) for row in rows]

    def list_roster(self, group_id):
        rows = self._fetch_all(
            '''SELECT id, nombre_completo, numero_lista
               FROM alumnos
               WHERE grupo_id = ?
               ORDER BY numero_lista NULLS LAST, nombre_completo''',
            (group_id,),
        )
        return [
            {'id': str(row['id']), 'name': row['nombre_completo'] or '', 'list_number': _opt_int(row['numero_lista'])}
            for row in rows
        ]

    def attendance_with_roster(self, group_id, day):
        """Roster of the group with each student's status for the day (None if unmarked)."""
        return merge_roster(self.list_roster(group_id), self.list_attendance(group_id, day), day)

    # ==================== PLANTEL SOURCES ====================

    def get_group(self, group_id):
        """Group ownership (plantel and teacher) used for access checks."""
        rows = self._fetch_all(
            'SELECT id, plantel_id, user_id, nombre, grado FROM grupos WHERE id = ?',
            (group_id,),
        )
        if not rows:
            raise NotFoundError(f'Group {group_id} does not exist.')
        row = rows[0]
        return {
            'id': str(row['id']),
            'plantel_id': str(row['plantel_id']),
            'user_id': _opt_str(row['user_id']),
            'name': row['nombre'] or '',
            'grade': row['grado'],
        }

    def list_groups(self, plantel_id):
        rows = self._fetch_all(
            '''SELECT id, nombre, grado
               FROM grupos
               WHERE plantel_id = ? AND activo = TRUE
               ORDER BY grado, nombre''',
            (plantel_id,),
        )
        return [{'id': str(row['id']), 'name': row['nombre'] or '', 'grade': row['grado']} for row in rows]

    def list_students_for_plantel(self, plantel_id):
        rows = self._fetch_all(
            '''SELECT a.id, a.nombre_completo, a.grupo_id
               FROM alumnos a
               JOIN grupos g ON g.id = a.grupo_id
               WHERE g.plantel_id = ? AND g.activo = TRUE
               ORDER BY a.nombre_completo''',
            (plantel_id,),
        )
        return [
            {'id': str(row['id']), 'name': row['nombre_completo'] or '', 'group_id': _opt_str(row['grupo_id'])}
            for row in rows
        ]

    def count_behaviour_incidents(self, student_ids):
        """Behaviour follow-up notes per student."""
        student_ids = list(student_ids)
        if not student_ids:
            return {}
        rows = self._fetch_all(
            '''SELECT alumno_id, COUNT(*) AS total
               FROM seguimiento_diario
               WHERE tipo = ? AND alumno_id = ANY(?)
               GROUP BY alumno_id''',
            (BEHAVIOUR_INCIDENT_TYPE, student_ids),
        )
        return {str(row['alumno_id']): int(row['total'] or 0) for row in rows}

    # ==================== OCCUPANCY SOURCE ====================

    def _fetch_limits(self, c, plantel_id, for_update=False):
        lock = ' FOR UPDATE' if for_update else ''
        db_execute(
            c,
            f'''SELECT id, max_usuarios, max_profesores, max_directores
                FROM planteles
                WHERE id = ? AND activo = TRUE{lock}''',
            (plantel_id,),
        )
        row = c.fetchone()
        if not row:
            raise NotFoundError(f'Plantel {plantel_id} does not exist or is inactive.')
        return PlantelLimits(
            plantel_id=str(row['id']),
            max_users=_opt_int(row['max_usuarios']),
            max_teachers=_opt_int(row['max_profesores']),
            max_directors=_opt_int(row['max_directores']),
        )

    def _count_occupancy(self, c, plantel_id):
        db_execute(
            c,
            '''SELECT COUNT(*) AS users,
                      COUNT(*) FILTER (WHERE role = 'profesor') AS teachers,
                      COUNT(*) FILTER (WHERE role = 'director') AS directors,
                      COUNT(*) FILTER (WHERE role = 'administrador') AS administrators
               FROM user_plantel_assignments
               WHERE plantel_id = ? AND activo = TRUE''',
            (plantel_id,),
        )
        row = c.fetchone()
        return Occupancy(
            users=int(row['users'] or 0),
            teachers=int(row['teachers'] or 0),
            directors=int(row['directors'] or 0),
            administrators=int(row['administrators'] or 0),
        )

    def get_plantel_limits(self, plantel_id):
        with self.connection() as conn:
            return self._fetch_limits(conn.cursor(), plantel_id)

    def get_occupancy(self, plantel_id):
        """Active assignments per role, counted now (never cached)."""
        with self.connection() as conn:
            return self._count_occupancy(conn.cursor(), plantel_id)

    def get_capacity_snapshot(self, plantel_id):
        """Limits and occupancy read in one transaction."""
        with self.connection() as conn:
            c = conn.cursor()
            limits = self._fetch_limits(c, plantel_id)
            return limits, self._count_occupancy(c, plantel_id)

    # ==================== ASSIGNMENT SINK ====================

    def _latest_assignment(self, c, user_id, plantel_id):
        db_execute(
            c,
            f'''SELECT {ASSIGNMENT_COLUMNS}
                FROM user_plantel_assignments
                WHERE user_id = ? AND plantel_id = ?
                ORDER BY activo DESC, assigned_at DESC
                LIMIT 1''',
            (user_id, plantel_id),
        )
        row = c.fetchone()
        return assignment_from_row(row) if row else None

    def _check_capacity(self, c, limits, role):
        occupancy = self._count_occupancy(c, limits.plantel_id)
        reason = assignment_rejection_reason(
            limits,
            occupancy,
            role,
            administrators_consume_user_slot=self.administrators_consume_user_slot,
        )
        if reason:
            logger.info('Assignment rejected for plantel %s (%s): %s', limits.plantel_id, role.value, reason)
            raise CapacityExceededError(reason)

    def assign_user(self, user_id, plantel_id, role, assigned_by=None):
        """Give a user an active role at a site if the ceilings allow it.

        The site row is locked for the whole transaction, so two requests
        racing for the last slot are serialised and only one succeeds.
        """
        role = Role.parse(role)
        with self.connection(commit=True) as conn:
            c = conn.cursor()
            limits = self._fetch_limits(c, plantel_id, for_update=True)
            existing = self._latest_assignment(c, user_id, plantel_id)
            if existing and existing.active:
                raise AssignmentConflictError(f'User {user_id} is already assigned to plantel {plantel_id}.')
            self._check_capacity(c, limits, role)
            if existing:
                db_execute(
                    c,
                    f'''UPDATE user_plantel_assignments
                        SET activo = TRUE, role = ?, assigned_by = ?, assigned_at = CURRENT_TIMESTAMP
                        WHERE id = ?
                        RETURNING {ASSIGNMENT_COLUMNS}''',
                    (role.storage_value, assigned_by, existing.id),
                )
            else:
                db_execute(
                    c,
                    f'''INSERT INTO user_plantel_assignments (user_id, plantel_id, role, activo, assigned_by)
                        VALUES (?, ?, ?, TRUE, ?)
                        RETURNING {ASSIGNMENT_COLUMNS}''',
                    (user_id, plantel_id, role.storage_value, assigned_by),
                )
            assignment = assignment_from_row(c.fetchone())
        logger.info('Assigned %s to plantel %s as %s', user_id, plantel_id, role.value)
        return assignment

    def set_assignment_active(self, user_id, plantel_id, active):
        """Toggle an existing assignment; reactivation is checked against the ceilings."""
        with self.connection(commit=True) as conn:
            c = conn.cursor()
            limits = self._fetch_limits(c, plantel_id, for_update=True)
            existing = self._latest_assignment(c, user_id, plantel_id)
            if existing is None:
                raise NotFoundError(f'User {user_id} has no assignment at plantel {plantel_id}.')
            if existing.active == bool(active):
                return existing
            if active:
                self._check_capacity(c, limits, existing.role)
            db_execute(
                c,
                f'''UPDATE user_plantel_assignments
                    SET activo = ?
                    WHERE id = ?
                    RETURNING {ASSIGNMENT_COLUMNS}''',
                (bool(active), existing.id),
            )
            assignment = assignment_from_row(c.fetchone())
        logger.info('Assignment %s at plantel %s set active=%s', user_id, plantel_id, assignment.active)
        return assignment

    # ==================== SCHEMA GUARDS ====================

    def verify_required_db_guards(self, strict=False):
        """Verify the indexes/constraints the capacity invariants rely on."""
        with self.connection() as conn:
            c = conn.cursor()
            db_execute(c, "SELECT indexname FROM pg_indexes WHERE schemaname = 'public'")
            present_indexes = {str(row[0]) for row in c.fetchall() if row and row[0]}
            db_execute(c, 'SELECT conname FROM pg_constraint')
            present_constraints = {str(row[0]) for row in c.fetchall() if row and row[0]}

        missing_indexes = sorted(REQUIRED_INDEXES - present_indexes)
        missing_constraints = sorted(REQUIRED_CONSTRAINTS - present_constraints)
        if not missing_indexes and not missing_constraints:
            return True

        message = (
            f"Missing DB guards. indexes={missing_indexes or 'none'}, "
            f"constraints={missing_constraints or 'none'}"
        )
        if strict:
            raise RuntimeError(message)
        logger.warning(message)
        return False
