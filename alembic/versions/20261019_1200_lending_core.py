"""Create users, loans, payment and loan limit tables

Revision ID: 20261019_1200_lending_core
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261019_1200_lending_core'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ============================================================
    # Users Table
    # ============================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('full_name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone_number', sa.String(length=20), nullable=False),
        sa.Column('role', sa.Enum('user', 'admin', name='userrole'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        # Lending limits (0 means unlimited)
        sa.Column('max_total_loan_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='50000.00'),
        sa.Column('max_active_loans', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_loan_amount_per_request', sa.Numeric(precision=12, scale=2), nullable=False, server_default='20000.00'),
        sa.Column('limits_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('limits_updated_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['limits_updated_by'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    # ============================================================
    # Loans Table
    # ============================================================
    op.create_table('loans',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        # Amounts
        sa.Column('loan_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('interest', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('total_repayment', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('paid_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0.00'),
        sa.Column('remaining_balance', sa.Numeric(precision=12, scale=2), nullable=False),
        # Lifecycle
        sa.Column('status', sa.Enum('pending', 'approved', 'rejected', 'partially paid', 'fully paid', 'defaulted', name='loanstatus'), nullable=False),
        sa.Column('category', sa.Enum('permanent', 'casual', name='loancategory'), nullable=False),
        sa.Column('repayment_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('extension_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('extension_month', sa.String(length=7), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        # Default
        sa.Column('is_defaulted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('defaulted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('default_reason', sa.Text(), nullable=True),
        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('remaining_balance >= 0', name='ck_loans_remaining_balance_non_negative'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_loans_id'), 'loans', ['id'], unique=False)
    op.create_index(op.f('ix_loans_user_id'), 'loans', ['user_id'], unique=False)
    op.create_index(op.f('ix_loans_status'), 'loans', ['status'], unique=False)

    # ============================================================
    # Loan Payment Requests Table
    # ============================================================
    op.create_table('loan_payment_requests',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('loan_id', sa.Integer(), nullable=False),
        sa.Column('correlation_id', sa.String(length=100), nullable=False),
        sa.Column('merchant_request_id', sa.String(length=100), nullable=True),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=False),
        sa.Column('status', sa.Enum('pending', 'completed', 'failed', name='paymentrequeststatus'), nullable=False),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('result_description', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_loan_payment_requests_id'), 'loan_payment_requests', ['id'], unique=False)
    op.create_index(op.f('ix_loan_payment_requests_loan_id'), 'loan_payment_requests', ['loan_id'], unique=False)
    op.create_index(op.f('ix_loan_payment_requests_correlation_id'), 'loan_payment_requests', ['correlation_id'], unique=True)

    # ============================================================
    # Loan Payments Table
    # ============================================================
    op.create_table('loan_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('loan_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('excess_amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0.00'),
        sa.Column('reference', sa.String(length=100), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('transaction_date', sa.String(length=20), nullable=True),
        sa.Column('correlation_id', sa.String(length=100), nullable=True),
        sa.Column('source', sa.Enum('mpesa', 'manual', 'adjustment', name='paymentsource'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['loan_id'], ['loans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_loan_payments_id'), 'loan_payments', ['id'], unique=False)
    op.create_index(op.f('ix_loan_payments_loan_id'), 'loan_payments', ['loan_id'], unique=False)
    op.create_index(op.f('ix_loan_payments_correlation_id'), 'loan_payments', ['correlation_id'], unique=False)

    # ============================================================
    # Loan Limit History Table
    # ============================================================
    op.create_table('loan_limit_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('limit_type', sa.String(length=50), nullable=False),
        sa.Column('old_value', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('new_value', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('changed_by', sa.Integer(), nullable=True),
        sa.Column('change_reason', sa.Text(), nullable=False),
        sa.Column('changed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['changed_by'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_loan_limit_history_id'), 'loan_limit_history', ['id'], unique=False)
    op.create_index(op.f('ix_loan_limit_history_user_id'), 'loan_limit_history', ['user_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_loan_limit_history_user_id'), table_name='loan_limit_history')
    op.drop_index(op.f('ix_loan_limit_history_id'), table_name='loan_limit_history')
    op.drop_table('loan_limit_history')

    op.drop_index(op.f('ix_loan_payments_correlation_id'), table_name='loan_payments')
    op.drop_index(op.f('ix_loan_payments_loan_id'), table_name='loan_payments')
    op.drop_index(op.f('ix_loan_payments_id'), table_name='loan_payments')
    op.drop_table('loan_payments')

    op.drop_index(op.f('ix_loan_payment_requests_correlation_id'), table_name='loan_payment_requests')
    op.drop_index(op.f('ix_loan_payment_requests_loan_id'), table_name='loan_payment_requests')
    op.drop_index(op.f('ix_loan_payment_requests_id'), table_name='loan_payment_requests')
    op.drop_table('loan_payment_requests')

    op.drop_index(op.f('ix_loans_status'), table_name='loans')
    op.drop_index(op.f('ix_loans_user_id'), table_name='loans')
    op.drop_index(op.f('ix_loans_id'), table_name='loans')
    op.drop_table('loans')

    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_index(op.f('ix_users_id'), table_name='users')
    op.drop_table('users')

    op.execute('DROP TYPE IF EXISTS paymentsource')
    op.execute('DROP TYPE IF EXISTS paymentrequeststatus')
    op.execute('DROP TYPE IF EXISTS loancategory')
    op.execute('DROP TYPE IF EXISTS loanstatus')
    op.execute('DROP TYPE IF EXISTS userrole')
