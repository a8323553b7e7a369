"""Initial schema for the EduPlanner analytics core.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create sites, assignments, groups, students, grading and attendance tables."""

    # Sites (planteles) with their three independent ceilings; NULL = no ceiling
    op.execute('''CREATE TABLE IF NOT EXISTS planteles (
                    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                    nombre TEXT NOT NULL,
                    direccion TEXT,
                    activo BOOLEAN NOT NULL DEFAULT TRUE,
                    max_usuarios INTEGER CHECK (max_usuarios IS NULL OR max_usuarios >= 0),
                    max_profesores INTEGER CHECK (max_profesores IS NULL OR max_profesores >= 0),
                    max_directores INTEGER CHECK (max_directores IS NULL OR max_directores >= 0),
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Role assignments; deactivation flips activo, rows are never deleted
    op.execute('''CREATE TABLE IF NOT EXISTS user_plantel_assignments (
                    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                    user_id TEXT NOT NULL,
                    plantel_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    activo BOOLEAN NOT NULL DEFAULT TRUE,
                    assigned_by TEXT,
                    assigned_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT fk_assignments_plantel
                        FOREIGN KEY (plantel_id) REFERENCES planteles(id) ON DELETE CASCADE,
                    CONSTRAINT ck_assignments_role
                        CHECK (role IN ('profesor', 'director', 'administrador'))
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS grupos (
                    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                    plantel_id TEXT NOT NULL REFERENCES planteles(id) ON DELETE CASCADE,
                    user_id TEXT,
                    nombre TEXT NOT NULL,
                    grado INTEGER,
                    ciclo_escolar TEXT,
                    activo BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS alumnos (
                    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                    grupo_id TEXT REFERENCES grupos(id) ON DELETE SET NULL,
                    nombre_completo TEXT NOT NULL,
                    numero_lista INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS actividades_evaluables (
                    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                    grupo_id TEXT NOT NULL REFERENCES grupos(id) ON DELETE CASCADE,
                    nombre TEXT NOT NULL,
                    tipo TEXT NOT NULL DEFAULT 'otro'
                        CHECK (tipo IN ('examen', 'tarea', 'proyecto', 'participacion', 'otro')),
                    descripcion TEXT,
                    fecha_entrega DATE,
                    ponderacion NUMERIC(5, 2) NOT NULL DEFAULT 0
                        CHECK (ponderacion >= 0 AND ponderacion <= 100),
                    examen_id TEXT,
                    planeacion_id TEXT,
                    deleted_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Duplicate (actividad, alumno) rows are tolerated; readers keep the latest updated_at
    op.execute('''CREATE TABLE IF NOT EXISTS calificaciones (
                    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                    actividad_id TEXT NOT NULL REFERENCES actividades_evaluables(id) ON DELETE CASCADE,
                    alumno_id TEXT NOT NULL REFERENCES alumnos(id) ON DELETE CASCADE,
                    calificacion NUMERIC(6, 2),
                    retroalimentacion TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS asistencia (
                    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                    alumno_id TEXT NOT NULL REFERENCES alumnos(id) ON DELETE CASCADE,
                    grupo_id TEXT NOT NULL REFERENCES grupos(id) ON DELETE CASCADE,
                    user_id TEXT,
                    fecha DATE NOT NULL,
                    estado TEXT NOT NULL
                        CHECK (estado IN ('presente', 'ausente', 'retardo', 'justificado')),
                    notas TEXT,
                    hora_registro TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Free-text follow-up notes (seguimiento); tipo 'comportamiento' feeds the risk report
    op.execute('''CREATE TABLE IF NOT EXISTS seguimiento_diario (
                    id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
                    alumno_id TEXT NOT NULL REFERENCES alumnos(id) ON DELETE CASCADE,
                    user_id TEXT,
                    tipo TEXT NOT NULL,
                    descripcion TEXT,
                    fecha DATE DEFAULT CURRENT_DATE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # At most one active assignment per (user, site)
    op.execute('''CREATE UNIQUE INDEX IF NOT EXISTS uq_active_user_plantel_assignment
                  ON user_plantel_assignments(user_id, plantel_id) WHERE activo''')
    op.execute('CREATE INDEX IF NOT EXISTS idx_assignments_plantel_active ON user_plantel_assignments(plantel_id, activo)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_grupos_plantel ON grupos(plantel_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_alumnos_grupo ON alumnos(grupo_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_actividades_grupo ON actividades_evaluables(grupo_id) WHERE deleted_at IS NULL')
    op.execute('CREATE INDEX IF NOT EXISTS idx_calificaciones_actividad_alumno ON calificaciones(actividad_id, alumno_id, updated_at DESC)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_calificaciones_alumno ON calificaciones(alumno_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_asistencia_grupo_fecha ON asistencia(grupo_id, fecha)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_asistencia_alumno_fecha ON asistencia(alumno_id, fecha, hora_registro DESC)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_seguimiento_alumno_tipo ON seguimiento_diario(alumno_id, tipo)')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS seguimiento_diario CASCADE')
    op.execute('DROP TABLE IF EXISTS asistencia CASCADE')
    op.execute('DROP TABLE IF EXISTS calificaciones CASCADE')
    op.execute('DROP TABLE IF EXISTS actividades_evaluables CASCADE')
    op.execute('DROP TABLE IF EXISTS alumnos CASCADE')
    op.execute('DROP TABLE IF EXISTS grupos CASCADE')
    op.execute('DROP TABLE IF EXISTS user_plantel_assignments CASCADE')
    op.execute('DROP TABLE IF EXISTS planteles CASCADE')
