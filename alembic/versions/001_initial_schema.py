"""001 Initial schema - bookings, audit trail, idempotency ledger, buffers, outbox

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # 1. Bookings
    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('scheduling_ref', sa.String(255), nullable=True, unique=True),
        sa.Column('payment_ref', sa.String(255), nullable=True, unique=True),
        sa.Column('state', sa.String(30), nullable=False, server_default='CREATED'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('builder_id', sa.String(255), nullable=True),
        sa.Column('client_id', sa.String(255), nullable=True),
        sa.Column('source', sa.String(20), nullable=True, server_default='direct'),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.String(255), nullable=True),
        sa.Column('refund_amount', sa.Integer(), nullable=True),
        sa.Column('refund_reference', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_bookings_state', 'bookings', ['state'])
    op.create_index('ix_bookings_client', 'bookings', ['client_id'])

    # 2. Append-only transition audit
    op.create_table(
        'booking_transitions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36),
                  sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('from_state', sa.String(30), nullable=False),
        sa.Column('to_state', sa.String(30), nullable=False),
        sa.Column('via_state', sa.String(30), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(50), nullable=True),
        sa.Column('event_id', sa.String(255), nullable=True),
        sa.Column('actor', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_transitions_booking_version', 'booking_transitions', ['booking_id', 'version'])

    # 3. Idempotency ledger
    op.create_table(
        'processed_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=True),
        sa.Column('outcome', sa.String(20), nullable=False, server_default='processing'),
        sa.Column('booking_id', sa.String(36), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('provider', 'event_id', name='uq_processed_event'),
    )
    op.create_index('ix_processed_events_created', 'processed_events', ['created_at'])

    # 4. Out-of-order buffer
    op.create_table(
        'pending_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=True),
        sa.Column('booking_id', sa.String(36), nullable=True),
        sa.Column('scheduling_ref', sa.String(255), nullable=True),
        sa.Column('payment_ref', sa.String(255), nullable=True),
        sa.Column('event_data', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('reason', sa.String(255), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_pending_status_booking', 'pending_events', ['status', 'booking_id'])
    op.create_index('ix_pending_status_sched', 'pending_events', ['status', 'scheduling_ref'])
    op.create_index('ix_pending_status_payment', 'pending_events', ['status', 'payment_ref'])
    op.create_index('ix_pending_expires', 'pending_events', ['expires_at'])

    # 5. Dead letters
    op.create_table(
        'dead_letter_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=True),
        sa.Column('event_type', sa.String(100), nullable=True),
        sa.Column('raw_body', sa.Text(), nullable=False),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('replay_outcome', sa.String(20), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_dead_letter_status', 'dead_letter_events', ['status'])
    op.create_index('ix_dead_letter_event', 'dead_letter_events', ['provider', 'event_id'])

    # 6. Outbound side effects
    op.create_table(
        'side_effect_outbox',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending'),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('max_attempts', sa.Integer(), server_default='5'),
        sa.Column('next_attempt_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('response_data', sa.JSON(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=False, unique=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_side_effect_status_next', 'side_effect_outbox', ['status', 'next_attempt_at'])
    op.create_index('ix_side_effect_booking', 'side_effect_outbox', ['booking_id'])


def downgrade():
    op.drop_index('ix_side_effect_booking', table_name='side_effect_outbox')
    op.drop_index('ix_side_effect_status_next', table_name='side_effect_outbox')
    op.drop_table('side_effect_outbox')

    op.drop_index('ix_dead_letter_event', table_name='dead_letter_events')
    op.drop_index('ix_dead_letter_status', table_name='dead_letter_events')
    op.drop_table('dead_letter_events')

    op.drop_index('ix_pending_expires', table_name='pending_events')
    op.drop_index('ix_pending_status_payment', table_name='pending_events')
    op.drop_index('ix_pending_status_sched', table_name='pending_events')
    op.drop_index('ix_pending_status_booking', table_name='pending_events')
    op.drop_table('pending_events')

    op.drop_index('ix_processed_events_created', table_name='processed_events')
    op.drop_table('processed_events')

    op.drop_index('ix_transitions_booking_version', table_name='booking_transitions')
    op.drop_table('booking_transitions')

    op.drop_index('ix_bookings_client', table_name='bookings')
    op.drop_index('ix_bookings_state', table_name='bookings')
    op.drop_table('bookings')
