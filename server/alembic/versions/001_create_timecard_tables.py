"""Create timecard and audit log tables

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

from timecards.core.immutability import (
    AUDIT_TABLE,
    POSTGRES_TRIGGER_FUNCTION,
    POSTGRES_TRIGGERS,
    SQLITE_TRIGGERS,
)

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


timecard_status = sa.Enum('draft', 'edited_draft', 'submitted', 'approved', 'rejected', name='timecardstatus')
worker_category = sa.Enum('talent_escort', 'supervisor', 'coordinator', 'staff', name='workercategory')
pay_type = sa.Enum('hourly', 'daily', name='paytype')
audit_action_type = sa.Enum('user_edit', 'admin_edit', 'rejection_edit', 'status_change', name='auditactiontype')


def upgrade() -> None:
    op.create_table(
        'timecards',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('worker_id', sa.Uuid(), nullable=False),
        sa.Column('project_id', sa.Uuid(), nullable=False),
        sa.Column('work_date', sa.Date(), nullable=False),
        sa.Column('period_start_date', sa.Date(), nullable=False),
        sa.Column('period_end_date', sa.Date(), nullable=False),
        sa.Column('worker_category', worker_category, nullable=False),
        sa.Column('check_in_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('check_out_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('break_start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('break_end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_hours', sa.Numeric(6, 2), nullable=False, server_default='0'),
        sa.Column('break_duration_minutes', sa.Numeric(7, 2), nullable=False, server_default='0'),
        sa.Column('total_pay', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('pay_type', pay_type, nullable=False, server_default='hourly'),
        sa.Column('pay_rate', sa.Numeric(10, 2), nullable=True),
        sa.Column('overtime_rate', sa.Numeric(10, 2), nullable=True),
        sa.Column('daily_rate', sa.Numeric(10, 2), nullable=True),
        sa.Column('status', timecard_status, nullable=False, server_default='draft'),
        sa.Column('manually_edited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('no_break_affirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('forced_stop', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('edit_comments', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('rejected_fields', sa.JSON(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approved_by', sa.Uuid(), nullable=True),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('worker_id', 'project_id', 'work_date', name='uq_timecards_worker_project_date'),
    )
    op.create_index('ix_timecards_worker_id', 'timecards', ['worker_id'])
    op.create_index('ix_timecards_project_id', 'timecards', ['project_id'])
    op.create_index('idx_timecards_project_status', 'timecards', ['project_id', 'status'])
    op.create_index('idx_timecards_open_shifts', 'timecards', ['check_out_time', 'check_in_time'])

    op.create_table(
        AUDIT_TABLE,
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('timecard_id', sa.Uuid(), sa.ForeignKey('timecards.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('change_group_id', sa.Uuid(), nullable=False),
        sa.Column('field_name', sa.String(100), nullable=True),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('changed_by', sa.Uuid(), nullable=False),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('action_type', audit_action_type, nullable=False),
        sa.Column('work_date', sa.Date(), nullable=True),
        sa.Column('record_version', sa.Integer(), nullable=True),
    )
    op.create_index(f'ix_{AUDIT_TABLE}_timecard_id', AUDIT_TABLE, ['timecard_id'])
    op.create_index(f'ix_{AUDIT_TABLE}_change_group_id', AUDIT_TABLE, ['change_group_id'])
    op.create_index('idx_timecard_audit_log_timecard_changed', AUDIT_TABLE, ['timecard_id', 'changed_at'])
    op.create_index('idx_timecard_audit_log_action_type', AUDIT_TABLE, ['timecard_id', 'action_type'])

    # Append-only guard at the database level
    dialect = op.get_bind().dialect.name
    if dialect == 'postgresql':
        op.execute(sa.DDL(POSTGRES_TRIGGER_FUNCTION))
        for statement in POSTGRES_TRIGGERS:
            op.execute(sa.DDL(statement))
    elif dialect == 'sqlite':
        for statement in SQLITE_TRIGGERS:
            op.execute(sa.DDL(statement))


def downgrade() -> None:
    dialect = op.get_bind().dialect.name
    if dialect == 'postgresql':
        op.execute(f'DROP TRIGGER IF EXISTS trg_{AUDIT_TABLE}_no_delete ON {AUDIT_TABLE}')
        op.execute(f'DROP TRIGGER IF EXISTS trg_{AUDIT_TABLE}_no_update ON {AUDIT_TABLE}')
        op.execute(f'DROP FUNCTION IF EXISTS {AUDIT_TABLE}_reject_change()')

    op.drop_table(AUDIT_TABLE)
    op.drop_table('timecards')

    if dialect == 'postgresql':
        audit_action_type.drop(op.get_bind(), checkfirst=True)
        timecard_status.drop(op.get_bind(), checkfirst=True)
        pay_type.drop(op.get_bind(), checkfirst=True)
        worker_category.drop(op.get_bind(), checkfirst=True)
