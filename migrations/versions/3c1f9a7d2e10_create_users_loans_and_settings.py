"""Create users, loans, loan change events and user settings

Revision ID: 3c1f9a7d2e10
Revises:
Create Date: 2026-09-28 10:14:02.114873

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c1f9a7d2e10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Tables may already exist from db.create_all() - only create what's missing
    conn = op.get_bind()
    existing = sa.inspect(conn).get_table_names()

    if 'users' not in existing:
        op.create_table('users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=120), nullable=False),
            sa.Column('password_hash', sa.String(length=255), nullable=False),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('last_login', sa.DateTime(), nullable=True),
            sa.Column('failed_login_attempts', sa.Integer(), nullable=False),
            sa.Column('locked_until', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    if 'loans' not in existing:
        op.create_table('loans',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(length=100), nullable=True),
            sa.Column('principal', sa.Numeric(precision=14, scale=2), nullable=False),
            sa.Column('remaining_balance', sa.Numeric(precision=14, scale=2), nullable=False),
            sa.Column('annual_rate', sa.Numeric(precision=7, scale=5), nullable=False),
            sa.Column('term_months', sa.Integer(), nullable=False),
            sa.Column('original_term_months', sa.Integer(), nullable=False),
            sa.Column('start_month', sa.Date(), nullable=False),
            sa.Column('is_closed', sa.Boolean(), nullable=False),
            sa.Column('closed_month', sa.Date(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.CheckConstraint('principal > 0', name='ck_loans_principal_positive'),
            sa.CheckConstraint('remaining_balance >= 0 AND remaining_balance <= principal',
                               name='ck_loans_balance_range'),
            sa.CheckConstraint('annual_rate > 0 AND annual_rate < 1', name='ck_loans_rate_range'),
            sa.CheckConstraint('term_months > 0', name='ck_loans_term_positive'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_loans_user_id'), 'loans', ['user_id'], unique=False)

    if 'loan_change_events' not in existing:
        op.create_table('loan_change_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('loan_id', sa.Integer(), nullable=False),
            sa.Column('change_type', sa.String(length=30), nullable=False),
            sa.Column('effective_month', sa.Date(), nullable=False),
            sa.Column('old_principal', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('new_principal', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('old_remaining_balance', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('new_remaining_balance', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('old_annual_rate', sa.Numeric(precision=7, scale=5), nullable=True),
            sa.Column('new_annual_rate', sa.Numeric(precision=7, scale=5), nullable=True),
            sa.Column('old_term_months', sa.Integer(), nullable=True),
            sa.Column('new_term_months', sa.Integer(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(['loan_id'], ['loans.id'], ),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_loan_change_events_user_id'), 'loan_change_events',
                        ['user_id'], unique=False)
        op.create_index('idx_loan_change_events_loan_month', 'loan_change_events',
                        ['loan_id', 'effective_month'], unique=False)

    if 'user_settings' not in existing:
        op.create_table('user_settings',
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('monthly_overpayment_limit', sa.Numeric(precision=14, scale=2), nullable=False),
            sa.Column('reinvest_reduced_payments', sa.Boolean(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.CheckConstraint('monthly_overpayment_limit >= 0', name='ck_user_settings_limit'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('user_id')
        )


def downgrade():
    op.drop_table('user_settings')
    op.drop_index('idx_loan_change_events_loan_month', table_name='loan_change_events')
    op.drop_index(op.f('ix_loan_change_events_user_id'), table_name='loan_change_events')
    op.drop_table('loan_change_events')
    op.drop_index(op.f('ix_loans_user_id'), table_name='loans')
    op.drop_table('loans')
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_table('users')
