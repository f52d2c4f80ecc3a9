"""Initial schema - booking lifecycle and payment instructions

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates:
- users, partner_staff (actor directory read by the engine)
- vehicles, bookings
- payment_instructions, transactions
- booking_issues, booking_history, notifications
- side_effect_outbox
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('full_name', sa.String(100), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('role', sa.String(30), nullable=False, server_default='driver'),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('company_name', sa.String(100), nullable=True),
        sa.Column('bank_account_name', sa.String(100), nullable=True),
        sa.Column('bank_account_number', sa.String(20), nullable=True),
        sa.Column('bank_sort_code', sa.String(10), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'partner_staff',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('partner_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('can_view_financials', sa.Boolean(), server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_partner_staff_partner', 'partner_staff', ['partner_id', 'is_active'])

    op.create_table(
        'vehicles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('partner_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('make', sa.String(50), nullable=True),
        sa.Column('model', sa.String(50), nullable=True),
        sa.Column('registration_number', sa.String(20), nullable=True),
        sa.Column('weekly_rate', sa.Numeric(10, 2), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='available'),
        sa.Column('current_booking_id', sa.String(36), nullable=True),
        sa.Column('active_booking_started', sa.DateTime(), nullable=True),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.Column('released_by', sa.String(36), nullable=True),
        sa.Column('released_by_type', sa.String(30), nullable=True),
        sa.Column('release_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_vehicle_partner', 'vehicles', ['partner_id'])
    op.create_index('ix_vehicle_current_booking', 'vehicles', ['current_booking_id'], unique=True)

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('driver_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('partner_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('vehicle_id', sa.String(36), sa.ForeignKey('vehicles.id', ondelete='SET NULL'), nullable=True),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(40), nullable=False, server_default='pending_payment'),
        sa.Column('total_amount', sa.Numeric(10, 2), server_default='0'),
        sa.Column('weekly_rate', sa.Numeric(10, 2), nullable=True),
        sa.Column('payment_status', sa.String(30), server_default='pending'),
        sa.Column('payment_method', sa.String(30), nullable=True),
        sa.Column('payment_instruction_id', sa.String(36), nullable=True),
        sa.Column('deposit_refunded', sa.Numeric(10, 2), server_default='0'),
        sa.Column('vehicle_reg', sa.String(20), nullable=True),
        sa.Column('car_info', sa.JSON(), nullable=True),
        sa.Column('insurance_required', sa.Boolean(), server_default=sa.false()),
        sa.Column('driver_insurance_valid', sa.Boolean(), server_default=sa.false()),
        sa.Column('partner_provides_insurance', sa.Boolean(), server_default=sa.false()),
        sa.Column('requires_document_verification', sa.Boolean(), server_default=sa.false()),
        sa.Column('all_documents_approved', sa.Boolean(), server_default=sa.false()),
        sa.Column('partner_acceptance_deadline', sa.DateTime(), nullable=True),
        sa.Column('partner_accepted_at', sa.DateTime(), nullable=True),
        sa.Column('partner_rejected_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('auto_rejected_at', sa.DateTime(), nullable=True),
        sa.Column('auto_rejection_reason', sa.Text(), nullable=True),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('activated_by', sa.String(36), nullable=True),
        sa.Column('activated_by_type', sa.String(30), nullable=True),
        sa.Column('activation_trigger', sa.String(30), nullable=True),
        sa.Column('activation_bypassed', sa.Boolean(), server_default=sa.false()),
        sa.Column('vehicle_released_at', sa.DateTime(), nullable=True),
        sa.Column('vehicle_released_by', sa.String(36), nullable=True),
        sa.Column('vehicle_released_by_type', sa.String(30), nullable=True),
        sa.Column('vehicle_release_reason', sa.Text(), nullable=True),
        sa.Column('return_requested', sa.Boolean(), server_default=sa.false()),
        sa.Column('return_requested_at', sa.DateTime(), nullable=True),
        sa.Column('return_requested_by', sa.String(36), nullable=True),
        sa.Column('return_requested_by_type', sa.String(30), nullable=True),
        sa.Column('return_reason', sa.Text(), nullable=True),
        sa.Column('return_approved_at', sa.DateTime(), nullable=True),
        sa.Column('return_approved_by', sa.String(36), nullable=True),
        sa.Column('return_approved_by_type', sa.String(30), nullable=True),
        sa.Column('return_rejected_at', sa.DateTime(), nullable=True),
        sa.Column('return_rejected_by', sa.String(36), nullable=True),
        sa.Column('return_rejected_by_type', sa.String(30), nullable=True),
        sa.Column('return_rejection_reason', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_booking_driver', 'bookings', ['driver_id'])
    op.create_index('ix_booking_partner', 'bookings', ['partner_id'])
    op.create_index('ix_booking_status_deadline', 'bookings', ['status', 'partner_acceptance_deadline'])

    op.create_table(
        'payment_instructions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('driver_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('partner_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('method', sa.String(30), nullable=False, server_default='bank_transfer'),
        sa.Column('frequency', sa.String(20), nullable=False, server_default='weekly'),
        sa.Column('type', sa.String(30), nullable=False, server_default='weekly_rent'),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(40), nullable=False, server_default='pending'),
        sa.Column('vehicle_reg', sa.String(20), nullable=True),
        sa.Column('bank_account_name', sa.String(100), nullable=True),
        sa.Column('bank_account_number', sa.String(20), nullable=True),
        sa.Column('bank_sort_code', sa.String(10), nullable=True),
        sa.Column('next_due_date', sa.DateTime(), nullable=True),
        sa.Column('last_sent_at', sa.DateTime(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=True),
        sa.Column('confirmed_by', sa.String(36), nullable=True),
        sa.Column('refunded_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('refund_rejection_reason', sa.Text(), nullable=True),
        sa.Column('refund_rejected_at', sa.DateTime(), nullable=True),
        sa.Column('source_instruction_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_instruction_booking_status', 'payment_instructions', ['booking_id', 'status'])
    op.create_index('ix_instruction_driver', 'payment_instructions', ['driver_id'])
    op.create_index('ix_instruction_partner', 'payment_instructions', ['partner_id'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='SET NULL'), nullable=True),
        sa.Column(
            'payment_instruction_id', sa.String(36),
            sa.ForeignKey('payment_instructions.id', ondelete='SET NULL'), nullable=True
        ),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(30), server_default='completed'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        'ix_transaction_instruction', 'transactions', ['payment_instruction_id', 'category', 'type']
    )

    op.create_table(
        'booking_issues',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False, server_default='medium'),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('reported_by', sa.String(36), nullable=False),
        sa.Column('reported_by_type', sa.String(30), nullable=False),
        sa.Column('reported_by_name', sa.String(100), nullable=True),
        sa.Column('reported_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('images', sa.JSON(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(36), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
    )
    op.create_index('ix_issue_booking', 'booking_issues', ['booking_id', 'reported_at'])

    op.create_table(
        'booking_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(60), nullable=False),
        sa.Column('performed_by', sa.String(36), nullable=True),
        sa.Column('performed_by_type', sa.String(30), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_history_booking_created', 'booking_history', ['booking_id', 'created_at'])
    op.create_index('ix_history_action', 'booking_history', ['action'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('recipient_id', sa.String(36), nullable=True),
        sa.Column('recipient_type', sa.String(30), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('priority', sa.String(20), server_default='medium'),
        sa.Column('is_read', sa.Boolean(), server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_notifications_recipient_id', 'notifications', ['recipient_id'])
    op.create_index('ix_notifications_type', 'notifications', ['type'])
    op.create_index('ix_notifications_is_read', 'notifications', ['is_read'])
    op.create_index('ix_notifications_created_at', 'notifications', ['created_at'])
    op.create_index(
        'ix_notification_recipient_read', 'notifications', ['recipient_type', 'recipient_id', 'is_read']
    )

    op.create_table(
        'side_effect_outbox',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('booking_id', sa.String(36), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending'),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('max_attempts', sa.Integer(), server_default='5'),
        sa.Column('next_attempt_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_side_effect_outbox_booking_id', 'side_effect_outbox', ['booking_id'])
    op.create_index('ix_side_effect_outbox_status_next', 'side_effect_outbox', ['status', 'next_attempt_at'])


def downgrade() -> None:
    op.drop_table('side_effect_outbox')
    op.drop_table('notifications')
    op.drop_table('booking_history')
    op.drop_table('booking_issues')
    op.drop_table('transactions')
    op.drop_table('payment_instructions')
    op.drop_table('bookings')
    op.drop_table('vehicles')
    op.drop_table('partner_staff')
    op.drop_table('users')
