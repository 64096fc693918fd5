"""Cash office initial schema: users, registers, shifts, ledger, closings, audit

Revision ID: 20261001_cash_office
Revises:
Create Date: 2026-10-01

This migration adds:
1. users, session_tokens (attribution and bearer sessions)
2. registers, shifts (one OPEN shift per register via partial unique index)
3. payments, refunds, cash_movements (ledger read by the calculator)
4. cash_closings, cash_closing_adjustments (immutable snapshots, partitioned per scope)
5. audit_events (append-only)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261001_cash_office'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. IDENTITY
    # ==========================================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(length=128), nullable=True),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='staff'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_users_username'), ['username'], unique=True)

    op.create_table('session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_reason', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('session_tokens', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_session_tokens_user_id'), ['user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_session_tokens_token_hash'), ['token_hash'], unique=True)
        batch_op.create_index(batch_op.f('ix_session_tokens_expires_at'), ['expires_at'], unique=False)
        batch_op.create_index('ix_session_tokens_user_active', ['user_id', 'is_revoked'], unique=False)

    # ==========================================================================
    # 2. REGISTERS & SHIFTS
    # ==========================================================================
    op.create_table('registers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('register_number', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('location', sa.String(length=128), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('register_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('registers', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_registers_is_active'), ['is_active'], unique=False)

    op.create_table('shifts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('register_id', sa.Integer(), nullable=False),
        sa.Column('opened_by_user_id', sa.Integer(), nullable=False),
        sa.Column('closed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='OPEN'),
        sa.Column('opening_cash', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('closing_cash', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('expected_cash', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('cash_difference', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('activity_type', sa.String(length=16), nullable=False, server_default='NORMAL'),
        sa.Column('force_closed', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('opened_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['register_id'], ['registers.id'], ),
        sa.ForeignKeyConstraint(['opened_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['closed_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('shifts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_shifts_register_id'), ['register_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_shifts_opened_by_user_id'), ['opened_by_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_shifts_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_shifts_opened_at'), ['opened_at'], unique=False)
        batch_op.create_index('ix_shifts_register_opened', ['register_id', 'opened_at'], unique=False)
        batch_op.create_index(
            'uq_shifts_one_open_per_register',
            ['register_id'],
            unique=True,
            sqlite_where=sa.text("status = 'OPEN'"),
            postgresql_where=sa.text("status = 'OPEN'"),
        )
        batch_op.create_index(
            'uq_shifts_one_open_per_user',
            ['opened_by_user_id'],
            unique=True,
            sqlite_where=sa.text("status = 'OPEN'"),
            postgresql_where=sa.text("status = 'OPEN'"),
        )

    # ==========================================================================
    # 3. LEDGER
    # ==========================================================================
    op.create_table('payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('method', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='completed'),
        sa.Column('refunded_total', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('paid_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('shift_id', sa.Integer(), nullable=True),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
        sa.CheckConstraint('refunded_total <= amount', name='ck_payments_refunded_le_amount'),
        sa.ForeignKeyConstraint(['shift_id'], ['shifts.id'], ),
        sa.ForeignKeyConstraint(['operator_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payments_method'), ['method'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_paid_at'), ['paid_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_shift_id'), ['shift_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_operator_id'), ['operator_id'], unique=False)
        batch_op.create_index('ix_payments_paid_at_operator', ['paid_at', 'operator_id'], unique=False)

    op.create_table('refunds',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('shift_id', sa.Integer(), nullable=True),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.CheckConstraint('amount > 0', name='ck_refunds_amount_positive'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ),
        sa.ForeignKeyConstraint(['shift_id'], ['shifts.id'], ),
        sa.ForeignKeyConstraint(['operator_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('refunds', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_refunds_payment_id'), ['payment_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_refunds_refunded_at'), ['refunded_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_refunds_shift_id'), ['shift_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_refunds_operator_id'), ['operator_id'], unique=False)

    op.create_table('cash_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=8), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('shift_id', sa.Integer(), nullable=True),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.CheckConstraint('amount > 0', name='ck_cash_movements_amount_positive'),
        sa.ForeignKeyConstraint(['shift_id'], ['shifts.id'], ),
        sa.ForeignKeyConstraint(['operator_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('cash_movements', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_cash_movements_type'), ['type'], unique=False)
        batch_op.create_index(batch_op.f('ix_cash_movements_created_at'), ['created_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_cash_movements_shift_id'), ['shift_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_cash_movements_operator_id'), ['operator_id'], unique=False)

    # ==========================================================================
    # 4. CASH CLOSINGS
    # ==========================================================================
    money = lambda name, **kw: sa.Column(name, sa.Numeric(precision=12, scale=2), nullable=False, **kw)  # noqa: E731

    op.create_table('cash_closings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('period_type', sa.String(length=16), nullable=False, server_default='manual'),
        sa.Column('employee_id', sa.Integer(), nullable=True),
        sa.Column('scope_key', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=False),
        money('expected_cash_amount'),
        money('expected_non_cash_amount'),
        money('expected_card_amount', server_default='0'),
        money('expected_transfer_amount', server_default='0'),
        money('expected_other_amount', server_default='0'),
        money('expected_total_amount'),
        money('cash_in_total', server_default='0'),
        money('cash_refunds_total', server_default='0'),
        money('pay_ins_total', server_default='0'),
        money('payouts_total', server_default='0'),
        sa.Column('payment_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refund_count', sa.Integer(), nullable=False, server_default='0'),
        money('declared_cash_amount'),
        money('declared_non_cash_amount'),
        money('declared_total_amount'),
        money('difference_cash'),
        money('difference_non_cash'),
        money('difference_total'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['employee_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('scope_key', 'start_at', name='uq_cash_closings_scope_start'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('cash_closings', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_cash_closings_employee_id'), ['employee_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_cash_closings_created_at'), ['created_at'], unique=False)
        batch_op.create_index('ix_cash_closings_scope_end', ['scope_key', 'end_at'], unique=False)

    op.create_table('cash_closing_adjustments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('closing_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_closing_adjustments_amount_positive'),
        sa.ForeignKeyConstraint(['closing_id'], ['cash_closings.id'], ),
        sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('cash_closing_adjustments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_cash_closing_adjustments_closing_id'), ['closing_id'], unique=False)

    # ==========================================================================
    # 5. AUDIT
    # ==========================================================================
    op.create_table('audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.Integer(), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('register_id', sa.Integer(), nullable=True),
        sa.Column('shift_id', sa.Integer(), nullable=True),
        sa.Column('closing_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['register_id'], ['registers.id'], ),
        sa.ForeignKeyConstraint(['shift_id'], ['shifts.id'], ),
        sa.ForeignKeyConstraint(['closing_id'], ['cash_closings.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('audit_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_audit_events_event_type'), ['event_type'], unique=False)
        batch_op.create_index(batch_op.f('ix_audit_events_actor_user_id'), ['actor_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_audit_events_occurred_at'), ['occurred_at'], unique=False)
        batch_op.create_index('ix_audit_events_entity', ['entity_type', 'entity_id'], unique=False)


def downgrade():
    op.drop_table('audit_events')
    op.drop_table('cash_closing_adjustments')
    op.drop_table('cash_closings')
    op.drop_table('cash_movements')
    op.drop_table('refunds')
    op.drop_table('payments')
    op.drop_table('shifts')
    op.drop_table('registers')
    op.drop_table('session_tokens')
    op.drop_table('users')
