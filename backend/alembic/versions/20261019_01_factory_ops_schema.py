"""create factory ops schema"""

from alembic import op
import sqlalchemy as sa
from typing import Sequence, Union

revision: str = '20261019_01'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'profiles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=False, server_default=''),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('permission', sa.String(), nullable=False, server_default='department'),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'departments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
    )
    op.create_table(
        'statuses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('comment', sa.Text()),
    )
    op.create_table(
        'factories',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('abbreviation', sa.String(), nullable=False),
    )
    op.create_table(
        'factory_sections',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('factory_id', sa.Integer(), sa.ForeignKey('factories.id'), nullable=False),
    )
    op.create_table(
        'machines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('factory_section_id', sa.Integer(), sa.ForeignKey('factory_sections.id'), nullable=False),
        sa.Column('is_running', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_table(
        'parts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('unit', sa.String()),
        sa.Column('description', sa.Text()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'machine_parts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('machine_id', sa.Integer(), sa.ForeignKey('machines.id'), nullable=False),
        sa.Column('part_id', sa.Integer(), sa.ForeignKey('parts.id'), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('req_qty', sa.Integer()),
        sa.UniqueConstraint('machine_id', 'part_id'),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('order_note', sa.Text(), nullable=False, server_default=''),
        sa.Column('order_type', sa.String(), nullable=False, server_default='Machine'),
        sa.Column('created_by_user_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id'), nullable=False),
        sa.Column('current_status_id', sa.Integer(), sa.ForeignKey('statuses.id'), nullable=False),
        sa.Column('factory_id', sa.Integer(), sa.ForeignKey('factories.id'), nullable=False),
        sa.Column('factory_section_id', sa.Integer(), sa.ForeignKey('factory_sections.id')),
        sa.Column('machine_id', sa.Integer(), sa.ForeignKey('machines.id')),
    )
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])
    op.create_table(
        'order_parts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('part_id', sa.Integer(), sa.ForeignKey('parts.id'), nullable=False),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('factory_id', sa.Integer(), sa.ForeignKey('factories.id'), nullable=False),
        sa.Column('factory_section_id', sa.Integer(), sa.ForeignKey('factory_sections.id')),
        sa.Column('machine_id', sa.Integer(), sa.ForeignKey('machines.id')),
        sa.Column('is_sample_sent_to_office', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('note', sa.Text()),
        sa.Column('unit_cost', sa.Float()),
        sa.Column('vendor', sa.String()),
        sa.Column('brand', sa.String()),
        sa.Column('purchased_date', sa.DateTime(timezone=True)),
        sa.Column('sent_to_factory_date', sa.DateTime(timezone=True)),
        sa.Column('received_by_factory_date', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('qty > 0', name='ck_order_parts_qty_positive'),
    )
    op.create_table(
        'status_tracker',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('status_id', sa.Integer(), sa.ForeignKey('statuses.id'), nullable=False),
        sa.Column('action_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('action_by_user_id', sa.Integer(), sa.ForeignKey('profiles.id'), nullable=False),
    )
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('profiles.id')),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('target_type', sa.String()),
        sa.Column('target_id', sa.Integer()),
        sa.Column('details', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
    )


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('status_tracker')
    op.drop_table('order_parts')
    op.drop_index('ix_orders_created_at', table_name='orders')
    op.drop_table('orders')
    op.drop_table('machine_parts')
    op.drop_table('parts')
    op.drop_table('machines')
    op.drop_table('factory_sections')
    op.drop_table('factories')
    op.drop_table('statuses')
    op.drop_table('departments')
    op.drop_table('profiles')
