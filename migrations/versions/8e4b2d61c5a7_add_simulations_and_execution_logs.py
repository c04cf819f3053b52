"""Add simulations, loan snapshots, history metrics and monthly execution logs

Revision ID: 8e4b2d61c5a7
Revises: 3c1f9a7d2e10
Create Date: 2026-09-30 16:42:51.380219

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8e4b2d61c5a7'
down_revision = '3c1f9a7d2e10'
branch_labels = None
depends_on = None


def upgrade():
    conn = op.get_bind()
    existing = sa.inspect(conn).get_table_names()

    if 'simulations' not in existing:
        op.create_table('simulations',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('strategy', sa.String(length=20), nullable=False),
            sa.Column('goal', sa.String(length=20), nullable=False),
            sa.Column('payment_reduction_target', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('monthly_overpayment_limit', sa.Numeric(precision=14, scale=2), nullable=False),
            sa.Column('reinvest_reduced_payments', sa.Boolean(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False),
            sa.Column('stale', sa.Boolean(), nullable=False),
            sa.Column('baseline_interest', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('total_interest_saved', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('projected_months_to_payoff', sa.Integer(), nullable=True),
            sa.Column('projected_payoff_month', sa.Date(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('started_at', sa.DateTime(), nullable=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.CheckConstraint('monthly_overpayment_limit >= 0', name='ck_simulations_limit'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_simulations_user_id'), 'simulations', ['user_id'], unique=False)
        op.create_index('idx_simulations_user_status', 'simulations', ['user_id', 'status'], unique=False)
        # At most one active simulation per user
        op.create_index('ux_simulations_user_active', 'simulations', ['user_id'], unique=True,
                        sqlite_where=sa.text('is_active = 1'),
                        postgresql_where=sa.text('is_active'))

    if 'simulation_loan_snapshots' not in existing:
        op.create_table('simulation_loan_snapshots',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('simulation_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('loan_id', sa.Integer(), nullable=False),
            sa.Column('starting_balance', sa.Numeric(precision=14, scale=2), nullable=False),
            sa.Column('starting_rate', sa.Numeric(precision=7, scale=5), nullable=False),
            sa.Column('remaining_term_months', sa.Integer(), nullable=False),
            sa.Column('starting_month', sa.Date(), nullable=False),
            sa.ForeignKeyConstraint(['loan_id'], ['loans.id'], ),
            sa.ForeignKeyConstraint(['simulation_id'], ['simulations.id'], ),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('simulation_id', 'loan_id', name='uix_snapshot_simulation_loan')
        )
        op.create_index(op.f('ix_simulation_loan_snapshots_simulation_id'),
                        'simulation_loan_snapshots', ['simulation_id'], unique=False)
        op.create_index(op.f('ix_simulation_loan_snapshots_user_id'),
                        'simulation_loan_snapshots', ['user_id'], unique=False)

    if 'simulation_history_metrics' not in existing:
        op.create_table('simulation_history_metrics',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('simulation_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('strategy', sa.String(length=20), nullable=False),
            sa.Column('goal', sa.String(length=20), nullable=False),
            sa.Column('baseline_interest', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('total_interest_saved', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('months_to_payoff', sa.Integer(), nullable=True),
            sa.Column('payoff_month', sa.Date(), nullable=True),
            sa.Column('monthly_payment_total', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('captured_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['simulation_id'], ['simulations.id'], ),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_simulation_history_metrics_simulation_id'),
                        'simulation_history_metrics', ['simulation_id'], unique=False)
        op.create_index(op.f('ix_simulation_history_metrics_user_id'),
                        'simulation_history_metrics', ['user_id'], unique=False)

    if 'monthly_execution_logs' not in existing:
        op.create_table('monthly_execution_logs',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('loan_id', sa.Integer(), nullable=False),
            sa.Column('month_start', sa.Date(), nullable=False),
            sa.Column('payment_status', sa.String(length=20), nullable=False),
            sa.Column('payment_executed_at', sa.DateTime(), nullable=True),
            sa.Column('overpayment_status', sa.String(length=20), nullable=False),
            sa.Column('overpayment_executed_at', sa.DateTime(), nullable=True),
            sa.Column('scheduled_overpayment_amount', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('actual_overpayment_amount', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('interest_portion', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('principal_portion', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('remaining_balance_after', sa.Numeric(precision=14, scale=2), nullable=True),
            sa.Column('reason_code', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(['loan_id'], ['loans.id'], ),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('loan_id', 'month_start', name='uix_log_loan_month')
        )
        op.create_index('idx_monthly_logs_user_month', 'monthly_execution_logs',
                        ['user_id', 'month_start'], unique=False)


def downgrade():
    op.drop_index('idx_monthly_logs_user_month', table_name='monthly_execution_logs')
    op.drop_table('monthly_execution_logs')
    op.drop_index(op.f('ix_simulation_history_metrics_user_id'), table_name='simulation_history_metrics')
    op.drop_index(op.f('ix_simulation_history_metrics_simulation_id'),
                  table_name='simulation_history_metrics')
    op.drop_table('simulation_history_metrics')
    op.drop_index(op.f('ix_simulation_loan_snapshots_user_id'), table_name='simulation_loan_snapshots')
    op.drop_index(op.f('ix_simulation_loan_snapshots_simulation_id'),
                  table_name='simulation_loan_snapshots')
    op.drop_table('simulation_loan_snapshots')
    op.drop_index('ux_simulations_user_active', table_name='simulations')
    op.drop_index('idx_simulations_user_status', table_name='simulations')
    op.drop_index(op.f('ix_simulations_user_id'), table_name='simulations')
    op.drop_table('simulations')
