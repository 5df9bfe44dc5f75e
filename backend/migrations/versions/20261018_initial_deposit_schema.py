"""Initial deposit schema: stores, deposits, withdrawals, transfers, audit

Revision ID: 20261018_initial
Revises:
Create Date: 2026-10-18

This migration creates:
1. Store and StoreSettings (single central store via partial unique index)
2. Deposit with quantity / VIP-expiry CHECK constraints
3. Withdrawal
4. Transfer (at most one non-rejected transfer per deposit) and CentralDeposit
5. AuditEntry (append-only audit_logs)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. STORES
    # ==========================================================================
    op.create_table('stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('is_central', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='Asia/Bangkok'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('stores', schema=None) as batch_op:
        batch_op.create_index('ix_stores_code', ['code'], unique=True)
        batch_op.create_index('ix_stores_is_active', ['is_active'], unique=False)
        batch_op.create_index(
            'uq_stores_single_central', ['is_central'], unique=True,
            sqlite_where=sa.text('is_central = 1'),
            postgresql_where=sa.text('is_central'),
        )

    op.create_table('store_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('default_expiry_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('expiry_warning_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('require_bar_confirmation', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('require_transfer_confirmation', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('customer_notify_deposit_enabled', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('customer_notify_withdrawal_enabled', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('customer_notify_expiry_enabled', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id'),
        sqlite_autoincrement=True,
    )

    # ==========================================================================
    # 2. DEPOSITS
    # ==========================================================================
    op.create_table('deposits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('deposit_code', sa.String(length=64), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('line_user_id', sa.String(length=64), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('quantity', sa.Numeric(10, 2), nullable=False),
        sa.Column('remaining_qty', sa.Numeric(10, 2), nullable=False),
        sa.Column('remaining_percent', sa.Numeric(5, 2), nullable=False, server_default='100'),
        sa.Column('table_number', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='in_store'),
        sa.Column('is_vip', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('photo_url', sa.String(length=512), nullable=True),
        sa.Column('customer_photo_url', sa.String(length=512), nullable=True),
        sa.Column('received_photo_url', sa.String(length=512), nullable=True),
        sa.Column('confirm_photo_url', sa.String(length=512), nullable=True),
        sa.Column('received_by', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_deposits_quantity_positive'),
        sa.CheckConstraint('remaining_qty >= 0 AND remaining_qty <= quantity', name='ck_deposits_remaining_in_range'),
        sa.CheckConstraint(
            "status IN ('expired', 'in_store', 'pending_confirm', 'pending_withdrawal', "
            "'transfer_pending', 'transferred_out', 'withdrawn')",
            name='ck_deposits_status_known',
        ),
        sa.CheckConstraint('NOT (is_vip AND expiry_date IS NOT NULL)', name='ck_deposits_vip_no_expiry'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'deposit_code', name='uq_deposits_store_code'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('deposits', schema=None) as batch_op:
        batch_op.create_index('ix_deposits_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_deposits_line_user_id', ['line_user_id'], unique=False)
        batch_op.create_index('ix_deposits_store_status', ['store_id', 'status'], unique=False)
        batch_op.create_index('ix_deposits_store_expiry', ['store_id', 'expiry_date'], unique=False)

    # ==========================================================================
    # 3. WITHDRAWALS
    # ==========================================================================
    op.create_table('withdrawals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('deposit_id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('requested_qty', sa.Numeric(10, 2), nullable=False),
        sa.Column('actual_qty', sa.Numeric(10, 2), nullable=True),
        sa.Column('table_number', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('processed_by', sa.String(length=64), nullable=True),
        sa.Column('requested_by', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('approved', 'completed', 'pending', 'rejected')",
            name='ck_withdrawals_status_known',
        ),
        sa.CheckConstraint('requested_qty > 0', name='ck_withdrawals_requested_positive'),
        sa.CheckConstraint('actual_qty IS NULL OR actual_qty > 0', name='ck_withdrawals_actual_positive'),
        sa.ForeignKeyConstraint(['deposit_id'], ['deposits.id']),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('withdrawals', schema=None) as batch_op:
        batch_op.create_index('ix_withdrawals_deposit_id', ['deposit_id'], unique=False)
        batch_op.create_index('ix_withdrawals_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_withdrawals_store_status', ['store_id', 'status'], unique=False)

    # ==========================================================================
    # 4. TRANSFERS / CENTRAL DEPOSITS
    # ==========================================================================
    op.create_table('transfers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('from_store_id', sa.Integer(), nullable=False),
        sa.Column('to_store_id', sa.Integer(), nullable=False),
        sa.Column('deposit_id', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('requested_by', sa.String(length=64), nullable=True),
        sa.Column('confirmed_by', sa.String(length=64), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('photo_url', sa.String(length=512), nullable=True),
        sa.Column('confirm_photo_url', sa.String(length=512), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('confirmed', 'pending', 'rejected')", name='ck_transfers_status_known'),
        sa.ForeignKeyConstraint(['deposit_id'], ['deposits.id']),
        sa.ForeignKeyConstraint(['from_store_id'], ['stores.id']),
        sa.ForeignKeyConstraint(['to_store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('transfers', schema=None) as batch_op:
        batch_op.create_index('ix_transfers_from_store_id', ['from_store_id'], unique=False)
        batch_op.create_index('ix_transfers_to_store_id', ['to_store_id'], unique=False)
        batch_op.create_index('ix_transfers_deposit_id', ['deposit_id'], unique=False)
        batch_op.create_index('ix_transfers_status', ['status'], unique=False)
        batch_op.create_index('ix_transfers_to_store_status', ['to_store_id', 'status'], unique=False)
        batch_op.create_index(
            'uq_transfers_live_deposit', ['deposit_id'], unique=True,
            sqlite_where=sa.text("status != 'rejected'"),
            postgresql_where=sa.text("status != 'rejected'"),
        )

    op.create_table('central_deposits',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('transfer_id', sa.Integer(), nullable=False),
        sa.Column('deposit_id', sa.Integer(), nullable=False),
        sa.Column('from_store_id', sa.Integer(), nullable=False),
        sa.Column('deposit_code', sa.String(length=64), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('quantity', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='awaiting_withdrawal'),
        sa.Column('received_by', sa.String(length=64), nullable=True),
        sa.Column('received_photo_url', sa.String(length=512), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('withdrawn_by', sa.String(length=64), nullable=True),
        sa.Column('withdrawal_notes', sa.Text(), nullable=True),
        sa.Column('withdrawn_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['deposit_id'], ['deposits.id']),
        sa.ForeignKeyConstraint(['from_store_id'], ['stores.id']),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.ForeignKeyConstraint(['transfer_id'], ['transfers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transfer_id', name='uq_central_deposits_transfer'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('central_deposits', schema=None) as batch_op:
        batch_op.create_index('ix_central_deposits_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_central_deposits_deposit_id', ['deposit_id'], unique=False)
        batch_op.create_index('ix_central_deposits_from_store_id', ['from_store_id'], unique=False)
        batch_op.create_index('ix_central_deposits_status', ['status'], unique=False)

    # ==========================================================================
    # 5. AUDIT LOGS
    # ==========================================================================
    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=True),
        sa.Column('action_type', sa.String(length=64), nullable=False),
        sa.Column('table_name', sa.String(length=64), nullable=True),
        sa.Column('record_id', sa.String(length=255), nullable=True),
        sa.Column('old_value', sa.JSON(), nullable=True),
        sa.Column('new_value', sa.JSON(), nullable=True),
        sa.Column('changed_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table('audit_logs', schema=None) as batch_op:
        batch_op.create_index('ix_audit_logs_store_id', ['store_id'], unique=False)
        batch_op.create_index('ix_audit_logs_action_type', ['action_type'], unique=False)
        batch_op.create_index('ix_audit_logs_changed_by', ['changed_by'], unique=False)
        batch_op.create_index('ix_audit_logs_created_at', ['created_at'], unique=False)
        batch_op.create_index('ix_audit_logs_store_created', ['store_id', 'created_at'], unique=False)
        batch_op.create_index('ix_audit_logs_table_record', ['table_name', 'record_id'], unique=False)


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('central_deposits')
    op.drop_table('transfers')
    op.drop_table('withdrawals')
    op.drop_table('deposits')
    op.drop_table('store_settings')
    op.drop_table('stores')
