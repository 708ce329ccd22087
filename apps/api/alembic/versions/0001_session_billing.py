"""Baseline migration - sessions, ledger, appointments and job queue

Revision ID: 0001_session_billing
Revises:
Create Date: 2026-10-18

Creates the session lifecycle tables, the doctor wallet ledger with its
per-unit uniqueness guarantee, patient quota, legacy appointments and the
durable job queue.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_session_billing'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SESSION_COLUMNS = '''
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            patient_id UUID NOT NULL,
            doctor_id UUID NOT NULL,
            modality VARCHAR(10) NOT NULL,
            appointment_id UUID,
            status VARCHAR(30) NOT NULL,
            reason TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            started_at TIMESTAMPTZ,
            last_activity_at TIMESTAMPTZ,
            ended_at TIMESTAMPTZ,
            sessions_remaining_before_start INTEGER NOT NULL DEFAULT 0,
            sessions_used INTEGER NOT NULL DEFAULT 0,
            auto_deductions_processed INTEGER NOT NULL DEFAULT 0,
            manual_deduction_applied BOOLEAN NOT NULL DEFAULT false
'''


def upgrade() -> None:
    """Create session billing tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Sessions
    # ==========================================================================
    op.execute(f'''
        CREATE TABLE text_sessions (
            {SESSION_COLUMNS},
            doctor_response_deadline TIMESTAMPTZ,
            CONSTRAINT ck_text_sessions_used_nonneg CHECK (sessions_used >= 0)
        )
    ''')
    op.execute('CREATE INDEX idx_text_sessions_status ON text_sessions(status)')
    op.execute('CREATE INDEX idx_text_sessions_pair_status ON text_sessions(patient_id, doctor_id, status)')
    op.execute('CREATE INDEX ix_text_sessions_patient_id ON text_sessions(patient_id)')
    op.execute('CREATE INDEX ix_text_sessions_doctor_id ON text_sessions(doctor_id)')

    op.execute(f'''
        CREATE TABLE call_sessions (
            {SESSION_COLUMNS},
            answered_at TIMESTAMPTZ,
            answered_by UUID,
            connected_at TIMESTAMPTZ,
            declined_at TIMESTAMPTZ,
            CONSTRAINT ck_call_sessions_used_nonneg CHECK (sessions_used >= 0)
        )
    ''')
    op.execute('CREATE INDEX idx_call_sessions_status ON call_sessions(status)')
    op.execute('CREATE INDEX idx_call_sessions_appointment ON call_sessions(appointment_id)')
    op.execute('CREATE INDEX ix_call_sessions_patient_id ON call_sessions(patient_id)')
    op.execute('CREATE INDEX ix_call_sessions_doctor_id ON call_sessions(doctor_id)')

    # ==========================================================================
    # Ledger
    # ==========================================================================
    op.execute('''
        CREATE TABLE doctor_wallets (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            doctor_id UUID NOT NULL UNIQUE,
            balance NUMERIC(14, 2) NOT NULL DEFAULT 0,
            total_earned NUMERIC(14, 2) NOT NULL DEFAULT 0,
            total_withdrawn NUMERIC(14, 2) NOT NULL DEFAULT 0,
            currency VARCHAR(3) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE wallet_transactions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            wallet_id UUID NOT NULL REFERENCES doctor_wallets(id) ON DELETE CASCADE,
            doctor_id UUID NOT NULL,
            type VARCHAR(10) NOT NULL,
            amount NUMERIC(14, 2) NOT NULL,
            currency VARCHAR(3) NOT NULL,
            modality VARCHAR(10),
            description TEXT,
            session_type VARCHAR(20),
            session_id UUID,
            unit_index INTEGER,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_wallet_txn_session_unit UNIQUE (session_type, session_id, unit_index, type),
            CONSTRAINT ck_wallet_txn_amount_nonneg CHECK (amount >= 0)
        )
    ''')
    op.execute('CREATE INDEX idx_wallet_txn_session ON wallet_transactions(session_type, session_id)')
    op.execute('CREATE INDEX idx_wallet_txn_doctor ON wallet_transactions(doctor_id, created_at)')

    op.execute('''
        CREATE TABLE patient_subscriptions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            patient_id UUID NOT NULL UNIQUE,
            is_active BOOLEAN NOT NULL DEFAULT true,
            text_sessions_remaining INTEGER NOT NULL DEFAULT 0,
            voice_calls_remaining INTEGER NOT NULL DEFAULT 0,
            video_calls_remaining INTEGER NOT NULL DEFAULT 0,
            payment_transaction_id VARCHAR(255),
            payment_gateway VARCHAR(50),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_sub_text_nonneg CHECK (text_sessions_remaining >= 0),
            CONSTRAINT ck_sub_voice_nonneg CHECK (voice_calls_remaining >= 0),
            CONSTRAINT ck_sub_video_nonneg CHECK (video_calls_remaining >= 0)
        )
    ''')

    # ==========================================================================
    # Legacy appointments
    # ==========================================================================
    op.execute('''
        CREATE TABLE appointments (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            patient_id UUID NOT NULL,
            doctor_id UUID NOT NULL,
            appointment_type VARCHAR(10) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            scheduled_at TIMESTAMPTZ,
            duration_minutes INTEGER NOT NULL DEFAULT 30,
            session_type VARCHAR(20),
            session_id UUID,
            billed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_appointments_session ON appointments(session_type, session_id)')
    op.execute('CREATE INDEX idx_appointments_doctor_status ON appointments(doctor_id, status)')

    # ==========================================================================
    # Job queue
    # ==========================================================================
    op.execute('''
        CREATE TABLE jobs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            queue VARCHAR(50) NOT NULL,
            job_type VARCHAR(50) NOT NULL,
            payload JSONB NOT NULL DEFAULT '{}'::jsonb,
            available_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            last_error TEXT,
            locked_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ,
            idempotency_key VARCHAR(255)
        )
    ''')
    op.execute('CREATE INDEX idx_jobs_pending ON jobs(status, available_at)')
    op.execute('CREATE INDEX idx_jobs_queue ON jobs(queue, status, available_at)')
    op.execute('''
        CREATE UNIQUE INDEX uq_job_idempotency ON jobs(idempotency_key)
        WHERE idempotency_key IS NOT NULL
    ''')


def downgrade() -> None:
    """Drop session billing tables."""
    op.execute('DROP TABLE IF EXISTS jobs CASCADE')
    op.execute('DROP TABLE IF EXISTS appointments CASCADE')
    op.execute('DROP TABLE IF EXISTS patient_subscriptions CASCADE')
    op.execute('DROP TABLE IF EXISTS wallet_transactions CASCADE')
    op.execute('DROP TABLE IF EXISTS doctor_wallets CASCADE')
    op.execute('DROP TABLE IF EXISTS call_sessions CASCADE')
    op.execute('DROP TABLE IF EXISTS text_sessions CASCADE')
