"""add_onboarding_session_tables

Revision ID: 3f1a9c2e7b40
Revises:
Create Date: 2026-09-02 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.execute("""
        CREATE TABLE IF NOT EXISTS job_applications (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
            first_name VARCHAR(255) NOT NULL,
            last_name VARCHAR(255) NOT NULL,
            email VARCHAR(255) NOT NULL,
            phone VARCHAR(50),
            position VARCHAR(255) NOT NULL,
            department VARCHAR(255) NOT NULL,
            cover_letter TEXT,
            status VARCHAR(20) NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'reviewed', 'approved', 'rejected')),
            review_notes TEXT,
            reviewed_by UUID REFERENCES users(id) ON DELETE SET NULL,
            reviewed_at TIMESTAMPTZ,
            job_offer JSONB,
            onboarding_session_id UUID,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_job_applications_org_status
        ON job_applications(organization_id, status)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS onboarding_sessions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
            job_application_id UUID REFERENCES job_applications(id) ON DELETE SET NULL,
            manager_id UUID REFERENCES users(id) ON DELETE SET NULL,
            created_by UUID REFERENCES users(id) ON DELETE SET NULL,
            token VARCHAR(128) NOT NULL UNIQUE,
            token_kind VARCHAR(20) NOT NULL CHECK (token_kind IN ('access_code', 'bearer')),
            expires_at TIMESTAMPTZ NOT NULL,
            candidate_email VARCHAR(255) NOT NULL,
            subject JSONB NOT NULL,
            status VARCHAR(30) NOT NULL DEFAULT 'pending'
                CHECK (status IN (
                    'pending', 'in_progress', 'submitted', 'manager_approved',
                    'requires_changes', 'approved', 'rejected', 'completed', 'expired'
                )),
            current_step VARCHAR(50) NOT NULL,
            step_status JSONB NOT NULL DEFAULT '{}'::jsonb,
            skipped_steps JSONB NOT NULL DEFAULT '[]'::jsonb,
            form_data JSONB NOT NULL DEFAULT '{}'::jsonb,
            documents JSONB NOT NULL DEFAULT '[]'::jsonb,
            signatures JSONB NOT NULL DEFAULT '{}'::jsonb,
            edit_requests JSONB NOT NULL DEFAULT '[]'::jsonb,
            review_history JSONB NOT NULL DEFAULT '[]'::jsonb,
            submitted_at TIMESTAMPTZ,
            reviewed_at TIMESTAMPTZ,
            reviewed_by UUID REFERENCES users(id) ON DELETE SET NULL,
            review_notes TEXT,
            employee_id UUID,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            completed_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_onboarding_sessions_org_status
        ON onboarding_sessions(organization_id, status)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_onboarding_sessions_candidate
        ON onboarding_sessions(organization_id, LOWER(candidate_email))
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS employees (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
            onboarding_session_id UUID NOT NULL UNIQUE REFERENCES onboarding_sessions(id),
            user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            employee_number VARCHAR(32) NOT NULL UNIQUE,
            first_name VARCHAR(255) NOT NULL,
            last_name VARCHAR(255) NOT NULL,
            email VARCHAR(255) NOT NULL,
            phone VARCHAR(50),
            position VARCHAR(255) NOT NULL,
            department VARCHAR(255) NOT NULL,
            pay_rate NUMERIC(10, 2) NOT NULL,
            employment_type VARCHAR(30) NOT NULL DEFAULT 'full_time',
            hire_date DATE NOT NULL,
            manager_id UUID REFERENCES users(id) ON DELETE SET NULL,
            address JSONB NOT NULL,
            emergency_contact JSONB,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_employees_organization_id ON employees(organization_id)
    """)


def downgrade() -> None:
    """Downgrade schema."""
    op.execute("DROP TABLE IF EXISTS employees")
    op.execute("DROP TABLE IF EXISTS onboarding_sessions")
    op.execute("DROP TABLE IF EXISTS job_applications")
