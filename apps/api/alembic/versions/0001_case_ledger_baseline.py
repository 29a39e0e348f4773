"""Baseline - organisations, users, cases, payment ledger, messaging, audit

Revision ID: 0001_case_ledger
Revises:
Create Date: 2026-10-18

Creates every table of the reconciliation portal. Types are portable so the
same revision runs on PostgreSQL and on SQLite for local development.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from app.db.types import Money


# revision identifiers, used by Alembic.
revision: str = '0001_case_ledger'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Organisations & users
    # ==========================================================================
    op.create_table(
        'organisations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('external_ref', sa.String(100), nullable=True, unique=True),
        sa.Column('contact_email', sa.String(255), nullable=True),
        sa.Column('contact_phone', sa.String(50), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('last_name', sa.String(100), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='member'),
        sa.Column('external_ref', sa.String(100), nullable=True, unique=True),
        sa.Column('hashed_password', sa.String(255), nullable=True),
        sa.Column('must_change_password', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('email_notifications', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('document_notifications', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('case_update_notifications', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('auto_mute_new_cases', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        'user_organisations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'organisation_id', sa.Uuid(),
            sa.ForeignKey('organisations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('role', sa.String(20), nullable=False, server_default='member'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'organisation_id', name='uq_user_organisation'),
    )
    op.create_index('ix_user_organisations_user_id', 'user_organisations', ['user_id'])
    op.create_index('ix_user_organisations_organisation_id', 'user_organisations', ['organisation_id'])

    # ==========================================================================
    # Cases & ledger
    # ==========================================================================
    op.create_table(
        'cases',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'organisation_id', sa.Uuid(),
            sa.ForeignKey('organisations.id', ondelete='RESTRICT'), nullable=False,
        ),
        sa.Column('account_number', sa.String(100), nullable=False),
        sa.Column('case_name', sa.String(255), nullable=False),
        sa.Column('external_ref', sa.String(100), nullable=True, unique=True),
        sa.Column('debtor_type', sa.String(20), nullable=False, server_default='individual'),
        sa.Column('debtor_email', sa.String(255), nullable=True),
        sa.Column('debtor_phone', sa.String(50), nullable=True),
        sa.Column('debtor_address', sa.Text(), nullable=True),
        sa.Column('original_amount', Money(), nullable=False),
        sa.Column('costs_added', Money(), nullable=False),
        sa.Column('interest_added', Money(), nullable=False),
        sa.Column('fees_added', Money(), nullable=False),
        sa.Column('outstanding_amount', Money(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('stage', sa.String(50), nullable=False, server_default='initial_contact'),
        sa.Column('assigned_to', sa.String(255), nullable=True),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('archived_by', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_cases_organisation_id', 'cases', ['organisation_id'])
    op.create_index('idx_cases_org_account', 'cases', ['organisation_id', 'account_number'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'organisation_id', sa.Uuid(),
            sa.ForeignKey('organisations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('amount', Money(), nullable=False),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('external_ref', sa.String(100), nullable=True, unique=True),
        sa.Column('recorded_by', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column(
            'reversal_of_id', sa.Uuid(),
            sa.ForeignKey('payments.id', ondelete='SET NULL'), nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index('ix_payments_case_id', 'payments', ['case_id'])
    op.create_index('ix_payments_reversal_of_id', 'payments', ['reversal_of_id'])

    op.create_table(
        'case_activities',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='CASCADE'), nullable=False),
        sa.Column('activity_type', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('performed_by', sa.String(255), nullable=False),
        sa.Column(
            'performed_by_user_id', sa.Uuid(),
            sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_case_activities_case_created', 'case_activities', ['case_id', 'created_at'])

    # ==========================================================================
    # Messages & documents
    # ==========================================================================
    op.create_table(
        'messages',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('sender_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('sender_name', sa.String(255), nullable=False),
        sa.Column('recipient_type', sa.String(20), nullable=False),
        sa.Column('recipient_id', sa.Uuid(), nullable=True),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='CASCADE'), nullable=True),
        sa.Column('subject', sa.String(255), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_messages_case_created', 'messages', ['case_id', 'created_at'])
    op.create_index('idx_messages_recipient', 'messages', ['recipient_type', 'recipient_id'])

    op.create_table(
        'documents',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='CASCADE'), nullable=True),
        sa.Column(
            'organisation_id', sa.Uuid(),
            sa.ForeignKey('organisations.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('uploaded_by', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('file_type', sa.String(100), nullable=True),
        sa.Column('file_path', sa.String(500), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_documents_case_id', 'documents', ['case_id'])

    # ==========================================================================
    # Mute / block
    # ==========================================================================
    op.create_table(
        'muted_cases',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('user_id', 'case_id', name='uq_muted_case'),
    )
    op.create_index('ix_muted_cases_user_id', 'muted_cases', ['user_id'])
    op.create_index('ix_muted_cases_case_id', 'muted_cases', ['case_id'])

    op.create_table(
        'case_access_restrictions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='CASCADE'), nullable=False),
        sa.Column(
            'blocked_user_id', sa.Uuid(),
            sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('created_by', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('case_id', 'blocked_user_id', name='uq_case_access_restriction'),
    )
    op.create_index('ix_case_access_restrictions_case_id', 'case_access_restrictions', ['case_id'])
    op.create_index(
        'ix_case_access_restrictions_blocked_user_id', 'case_access_restrictions', ['blocked_user_id']
    )

    # ==========================================================================
    # Audit trail (append-only, no foreign keys)
    # ==========================================================================
    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('table_name', sa.String(50), nullable=False),
        sa.Column('record_id', sa.String(64), nullable=False),
        sa.Column('operation', sa.String(10), nullable=False),
        sa.Column('field_name', sa.String(100), nullable=True),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('actor', sa.String(64), nullable=False),
        sa.Column('actor_user_id', sa.Uuid(), nullable=True),
        sa.Column('organisation_id', sa.Uuid(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('request_id', sa.String(64), nullable=True),
        sa.Column('prev_hash', sa.String(64), nullable=True),
        sa.Column('entry_hash', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_audit_table_record', 'audit_log', ['table_name', 'record_id'])
    op.create_index('idx_audit_actor_created', 'audit_log', ['actor', 'created_at'])
    op.create_index('idx_audit_created', 'audit_log', ['created_at'])
    op.create_index(
        'uq_audit_first_view',
        'audit_log',
        ['table_name', 'record_id', 'actor'],
        unique=True,
        postgresql_where=sa.text("operation = 'VIEW'"),
        sqlite_where=sa.text("operation = 'VIEW'"),
    )


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('case_access_restrictions')
    op.drop_table('muted_cases')
    op.drop_table('documents')
    op.drop_table('messages')
    op.drop_table('case_activities')
    op.drop_table('payments')
    op.drop_table('cases')
    op.drop_table('user_organisations')
    op.drop_table('users')
    op.drop_table('organisations')
