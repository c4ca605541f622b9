"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create booking engine schema."""

    # ========================================================================
    # Create members table
    # ========================================================================
    op.create_table(
        'members',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('external_id', name='uq_members_external_id'),
    )

    # ========================================================================
    # Create plan_grants table
    # ========================================================================
    op.create_table(
        'plan_grants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('member_id', UUID(as_uuid=True), nullable=False),
        sa.Column('plan_name', sa.String(100), nullable=False, server_default='class-pack'),
        sa.Column('initial_credits', sa.Integer(), nullable=False),
        sa.Column('remaining_credits', sa.Integer(), nullable=False),
        sa.Column('is_unlimited', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('ledger_sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('initial_credits >= 0', name='ck_grant_initial_non_negative'),
        sa.CheckConstraint('is_unlimited OR remaining_credits >= 0', name='ck_grant_remaining_non_negative'),
        sa.CheckConstraint('end_date >= start_date', name='ck_grant_window_ordered'),
        sa.CheckConstraint("status IN ('active', 'expired', 'cancelled')", name='ck_grant_status'),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], name='fk_plan_grants_member', ondelete='RESTRICT'),
    )

    op.create_index('ix_plan_grants_member_id', 'plan_grants', ['member_id'])
    op.create_index('idx_plan_grants_member_status', 'plan_grants', ['member_id', 'status'])
    op.create_index('idx_plan_grants_end_date', 'plan_grants', ['end_date'])
    op.create_index(
        'uq_plan_grants_external_reference', 'plan_grants', ['external_reference'],
        unique=True, postgresql_where=sa.text('external_reference IS NOT NULL'),
    )

    # ========================================================================
    # Create sessions table
    # ========================================================================
    op.create_table(
        'sessions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('session_date', sa.Date(), nullable=False),
        sa.Column('session_time', sa.Time(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('spots_taken', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('booking_cutoff_minutes', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('cancellation_cutoff_hours', sa.Integer(), nullable=False, server_default='12'),
        sa.Column('status', sa.String(20), nullable=False, server_default='scheduled'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('capacity > 0', name='ck_session_capacity_positive'),
        sa.CheckConstraint('spots_taken >= 0', name='ck_session_spots_non_negative'),
        sa.CheckConstraint('spots_taken <= capacity', name='ck_session_spots_within_capacity'),
        sa.CheckConstraint('duration_minutes > 0', name='ck_session_duration_positive'),
        sa.CheckConstraint('booking_cutoff_minutes >= 0', name='ck_session_booking_cutoff'),
        sa.CheckConstraint('cancellation_cutoff_hours >= 0', name='ck_session_cancellation_cutoff'),
        sa.CheckConstraint("status IN ('scheduled', 'completed', 'cancelled')", name='ck_session_status'),
    )

    op.create_index('idx_sessions_date_time', 'sessions', ['session_date', 'session_time'])
    op.create_index('idx_sessions_status', 'sessions', ['status'])

    # ========================================================================
    # Create bookings table
    # ========================================================================
    op.create_table(
        'bookings',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('member_id', UUID(as_uuid=True), nullable=False),
        sa.Column('session_id', UUID(as_uuid=True), nullable=False),
        sa.Column('plan_grant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('booking_time', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(255), nullable=True),
        sa.Column('credit_refunded', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),

        # Constraints
        sa.CheckConstraint("status IN ('active', 'cancelled')", name='ck_booking_status'),
        sa.CheckConstraint("status = 'active' OR cancelled_at IS NOT NULL", name='ck_booking_cancelled_has_timestamp'),
        sa.ForeignKeyConstraint(['member_id'], ['members.id'], name='fk_bookings_member', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['session_id'], ['sessions.id'], name='fk_bookings_session', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['plan_grant_id'], ['plan_grants.id'], name='fk_bookings_plan_grant', ondelete='RESTRICT'),
    )

    op.create_index('ix_bookings_member_id', 'bookings', ['member_id'])
    op.create_index('ix_bookings_session_id', 'bookings', ['session_id'])
    op.create_index('ix_bookings_plan_grant_id', 'bookings', ['plan_grant_id'])
    op.create_index('idx_bookings_session_status', 'bookings', ['session_id', 'status'])
    op.create_index('idx_bookings_grant_status', 'bookings', ['plan_grant_id', 'status'])
    op.create_index('idx_bookings_booking_time', 'bookings', ['booking_time'])
    # At most one active booking per (member, session)
    op.create_index(
        'uq_bookings_member_session_active', 'bookings', ['member_id', 'session_id'],
        unique=True, postgresql_where=sa.text("status = 'active'"),
    )

    # ========================================================================
    # Create ledger_entries table
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('plan_grant_id', UUID(as_uuid=True), nullable=False),
        sa.Column('entry_type', sa.String(20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('reference_id', UUID(as_uuid=True), nullable=False),
        sa.Column('reference_type', sa.String(20), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount >= 0', name='ck_ledger_amount_non_negative'),
        sa.CheckConstraint('sequence > 0', name='ck_ledger_sequence_positive'),
        sa.CheckConstraint("entry_type IN ('debit', 'credit')", name='ck_ledger_entry_type'),
        sa.CheckConstraint(
            "reference_type IN ('booking', 'cancellation', 'grant_reversal')",
            name='ck_ledger_reference_type',
        ),
        sa.UniqueConstraint('plan_grant_id', 'sequence', name='uq_ledger_grant_sequence'),
        sa.ForeignKeyConstraint(['plan_grant_id'], ['plan_grants.id'], name='fk_ledger_plan_grant', ondelete='RESTRICT'),
    )

    op.create_index('ix_ledger_entries_plan_grant_id', 'ledger_entries', ['plan_grant_id'])
    op.create_index('idx_ledger_entries_grant_created', 'ledger_entries', ['plan_grant_id', 'created_at'])
    op.create_index('idx_ledger_entries_reference', 'ledger_entries', ['reference_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('ledger_entries')
    op.drop_table('bookings')
    op.drop_table('sessions')
    op.drop_table('plan_grants')
    op.drop_table('members')
