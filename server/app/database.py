from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

_pool: Optional[asyncpg.Pool] = None


async def init_pool(database_url: str):
    """Initialize the connection pool."""
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(database_url, min_size=2, max_size=10)
    return _pool


async def get_pool() -> asyncpg.Pool:
    """Get the existing connection pool."""
    global _pool
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool first.")
    return _pool


async def close_pool():
    """Close the connection pool."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


@asynccontextmanager
async def get_connection():
    """Get a database connection from the pool."""
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn


async def init_db():
    """Create tables if they don't exist."""
    async with get_connection() as conn:
        # Companies (properties / organizations)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS companies (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                name VARCHAR(255) NOT NULL,
                property_type VARCHAR(50) DEFAULT 'hotel',
                enabled_features JSONB DEFAULT '{}'::jsonb,
                created_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)

        # Users table (auth)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                email VARCHAR(255) NOT NULL UNIQUE,
                password_hash VARCHAR(255) NOT NULL,
                role VARCHAR(20) NOT NULL CHECK (role IN ('admin', 'hr', 'manager', 'employee')),
                organization_id UUID REFERENCES companies(id) ON DELETE SET NULL,
                name VARCHAR(255),
                is_active BOOLEAN DEFAULT true,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                last_login TIMESTAMPTZ
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_organization_id ON users(organization_id)
        """)

        # Job applications (upstream of onboarding)
        await conn.execute("""
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
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_job_applications_org_status
            ON job_applications(organization_id, status)
        """)

        # Onboarding sessions
        await conn.execute("""
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
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_onboarding_sessions_org_status
            ON onboarding_sessions(organization_id, status)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_onboarding_sessions_candidate
            ON onboarding_sessions(organization_id, LOWER(candidate_email))
        """)

        # Employees (materialized from approved onboarding sessions)
        await conn.execute("""
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
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_employees_organization_id ON employees(organization_id)
        """)
