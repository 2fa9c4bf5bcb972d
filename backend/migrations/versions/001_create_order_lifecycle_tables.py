"""
Alembic migration: Create order lifecycle tables.

Creates orders and order_items, the append-only history tables
(order_history, order_item_history, order_changes), completion notes,
exception comments and per order type configuration. Statuses are stored as
strings so unknown values written by other clients still load.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        'id',
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        nullable=False,
        comment='Row identifier',
    )


def _timestamp_columns() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
    ]


def _order_fk(index: bool = False) -> sa.Column:
    return sa.Column(
        'order_id',
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey('orders.id', ondelete='CASCADE'),
        nullable=False,
        index=index,
    )


def upgrade() -> None:
    """
    Create the order lifecycle schema.

    Orders and items are mutable; every history table is append-only and
    carries its own event timestamp.
    """
    op.create_table(
        'orders',
        _id_column(),
        sa.Column('order_number', sa.String(length=50), nullable=False, unique=True,
                  comment='Human-readable order number'),
        sa.Column('order_type', sa.String(length=50), nullable=False,
                  comment='Order type, keys order_type_config'),
        sa.Column('order_category', sa.String(length=20), nullable=False,
                  comment='sales or stock; selects the production column'),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('delivery_address', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False,
                  comment='Fine-grained lifecycle status'),
        sa.Column('priority', sa.String(length=10), nullable=False),
        sa.Column('delivery_date', sa.Date(), nullable=True, comment='Delivery deadline'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('production_released_at', sa.DateTime(timezone=True), nullable=True,
                  comment='First time any item entered production'),
        sa.Column('production_released_by', sa.String(length=255), nullable=True),
        *_timestamp_columns(),
        sa.CheckConstraint("priority IN ('high', 'medium', 'low')", name='ck_orders_priority'),
        sa.CheckConstraint("order_category IN ('sales', 'stock')", name='ck_orders_category'),
        comment='Orders moving through the fulfillment pipeline',
    )
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_category_status', 'orders', ['order_category', 'status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])

    op.create_table(
        'order_items',
        _id_column(),
        _order_fk(),
        sa.Column('item_code', sa.String(length=100), nullable=False),
        sa.Column('item_description', sa.Text(), nullable=False),
        sa.Column('requested_quantity', sa.Float(), nullable=False),
        sa.Column('delivered_quantity', sa.Float(), nullable=False),
        sa.Column('unit', sa.String(length=10), nullable=False),
        sa.Column('warehouse', sa.String(length=100), nullable=True),
        sa.Column('item_status', sa.String(length=30), nullable=False),
        sa.Column('current_phase', sa.String(length=30), nullable=True),
        sa.Column('phase_started_at', sa.DateTime(timezone=True), nullable=True,
                  comment='When the item entered current_phase'),
        sa.Column('is_removed', sa.Boolean(), nullable=False, server_default=sa.text('false'),
                  comment='Soft removal flag'),
        *_timestamp_columns(),
        sa.CheckConstraint('requested_quantity >= 0', name='ck_order_items_requested_positive'),
        sa.CheckConstraint('delivered_quantity >= 0', name='ck_order_items_delivered_positive'),
        comment='Order line items',
    )
    op.create_index('ix_order_items_order', 'order_items', ['order_id'])

    op.create_table(
        'order_history',
        _id_column(),
        _order_fk(),
        sa.Column('old_status', sa.String(length=50), nullable=True),
        sa.Column('new_status', sa.String(length=50), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        comment='Append-only order status history',
    )
    op.create_index('ix_order_history_order_changed', 'order_history', ['order_id', 'changed_at'])

    op.create_table(
        'order_item_history',
        _id_column(),
        _order_fk(),
        sa.Column(
            'order_item_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('order_items.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('field_changed', sa.String(length=50), nullable=False),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        comment='Append-only item field history',
    )
    op.create_index(
        'ix_order_item_history_order_changed',
        'order_item_history',
        ['order_id', 'changed_at'],
    )
    op.create_index('ix_order_item_history_item', 'order_item_history', ['order_item_id'])

    op.create_table(
        'order_changes',
        _id_column(),
        _order_fk(),
        sa.Column('field_name', sa.String(length=50), nullable=False),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('change_type', sa.String(length=20), nullable=False),
        sa.Column('changed_by', sa.String(length=255), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        comment='Append-only order field change log',
    )
    op.create_index('ix_order_changes_order_changed', 'order_changes', ['order_id', 'changed_at'])

    op.create_table(
        'order_completion_notes',
        _id_column(),
        _order_fk(index=True),
        sa.Column('note', sa.Text(), nullable=False),
        sa.Column(
            'pending_items',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
            comment='Snapshot of the items still pending at completion',
        ),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
    )

    op.create_table(
        'order_comments',
        _id_column(),
        _order_fk(index=True),
        sa.Column('comment', sa.Text(), nullable=False),
        sa.Column('responsible', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
    )

    op.create_table(
        'order_type_config',
        _id_column(),
        sa.Column('order_type', sa.String(length=50), nullable=False, unique=True),
        sa.Column('display_name', sa.String(length=100), nullable=False),
        sa.Column('default_sla_days', sa.Integer(), nullable=False,
                  comment='Days added to today when an order enters a time-sensitive phase'),
        *_timestamp_columns(),
        sa.CheckConstraint('default_sla_days >= 0', name='ck_order_type_config_sla_positive'),
        comment='Order type configuration',
    )


def downgrade() -> None:
    """Drop the order lifecycle schema."""
    op.drop_table('order_type_config')
    op.drop_table('order_comments')
    op.drop_table('order_completion_notes')
    op.drop_index('ix_order_changes_order_changed', table_name='order_changes')
    op.drop_table('order_changes')
    op.drop_index('ix_order_item_history_item', table_name='order_item_history')
    op.drop_index('ix_order_item_history_order_changed', table_name='order_item_history')
    op.drop_table('order_item_history')
    op.drop_index('ix_order_history_order_changed', table_name='order_history')
    op.drop_table('order_history')
    op.drop_index('ix_order_items_order', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('ix_orders_created_at', table_name='orders')
    op.drop_index('ix_orders_category_status', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_table('orders')
