"""initial binding schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the complete schema from scratch:
- products / packages / customers: catalog
- inventory / inventory_slots: stock units and their account seats
- orders: customer orders with the order-side binding pointer
- renewals: append-only extension ledger (order or unit)
- binding_events: audit spine for binding changes
- code_sequences: per-kind human-readable code counters
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade():
    # ============================================================================
    # Catalog
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('shared_inventory_pool', sa.Boolean(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_products_code'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'packages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('warranty_months', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('cost_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ctv_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('retail_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_account_based', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('default_slots', sa.Integer(), nullable=True),
        sa.Column('account_columns', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_packages_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_packages_product_id', 'packages', ['product_id'])

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('customer_type', sa.String(length=16), nullable=False, server_default='RETAIL'),
        sa.Column('phone', sa.String(length=64), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_customers_code'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # orders: inventory_item_id is deliberately not a foreign key
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=False),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('custom_expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PROCESSING'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='UNPAID'),
        sa.Column('inventory_item_id', sa.Integer(), nullable=True),
        sa.Column('inventory_profile_ids', sa.JSON(), nullable=True),
        sa.Column('sale_price', sa.Integer(), nullable=True),
        sa.Column('cogs', sa.Integer(), nullable=True),
        sa.Column('use_custom_price', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('custom_price', sa.Integer(), nullable=True),
        sa.Column('order_info', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.ForeignKeyConstraint(['package_id'], ['packages.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_orders_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_package_id', 'orders', ['package_id'])
    op.create_index('ix_orders_expiry_date', 'orders', ['expiry_date'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_inventory_item_id', 'orders', ['inventory_item_id'])
    op.create_index('ix_orders_status_expiry', 'orders', ['status', 'expiry_date'])

    # ============================================================================
    # inventory + inventory_slots
    # ============================================================================
    op.create_table(
        'inventory',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('package_id', sa.Integer(), nullable=True),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('purchase_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='AVAILABLE'),
        sa.Column('is_account_based', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('total_slots', sa.Integer(), nullable=True),
        sa.Column('linked_order_id', sa.Integer(), nullable=True),
        sa.Column('previous_linked_order_id', sa.Integer(), nullable=True),
        sa.Column('pool_warranty_months', sa.Integer(), nullable=True),
        sa.Column('product_info', sa.Text(), nullable=True),
        sa.Column('account_data', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['package_id'], ['packages.id'], ),
        sa.ForeignKeyConstraint(['linked_order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_inventory_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_product_id', 'inventory', ['product_id'])
    op.create_index('ix_inventory_package_id', 'inventory', ['package_id'])
    op.create_index('ix_inventory_expiry_date', 'inventory', ['expiry_date'])
    op.create_index('ix_inventory_status', 'inventory', ['status'])
    op.create_index('ix_inventory_linked_order_id', 'inventory', ['linked_order_id'])
    op.create_index('ix_inventory_product_status', 'inventory', ['product_id', 'status'])
    op.create_index('ix_inventory_package_status', 'inventory', ['package_id', 'status'])

    op.create_table(
        'inventory_slots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('unit_id', sa.Integer(), nullable=False),
        sa.Column('slot_key', sa.String(length=32), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('label', sa.String(length=64), nullable=False),
        sa.Column('assigned_order_id', sa.Integer(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expiry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('needs_update', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('previous_order_id', sa.Integer(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['unit_id'], ['inventory.id'], ),
        sa.ForeignKeyConstraint(['assigned_order_id'], ['orders.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('unit_id', 'slot_key', name='uq_inventory_slots_unit_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_inventory_slots_unit_id', 'inventory_slots', ['unit_id'])
    op.create_index('ix_inventory_slots_assigned_order_id', 'inventory_slots', ['assigned_order_id'])
    op.create_index('ix_inventory_slots_expiry', 'inventory_slots', ['assigned_order_id', 'expiry_at'])

    # ============================================================================
    # renewals: exactly one target per row
    # ============================================================================
    op.create_table(
        'renewals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('inventory_id', sa.Integer(), nullable=True),
        sa.Column('months', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('package_id', sa.Integer(), nullable=True),
        sa.Column('use_custom_price', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('previous_expiry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('new_expiry_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='UNPAID'),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('(order_id IS NULL) <> (inventory_id IS NULL)', name='ck_renewals_single_target'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['inventory_id'], ['inventory.id'], ),
        sa.ForeignKeyConstraint(['package_id'], ['packages.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_renewals_order_id', 'renewals', ['order_id'])
    op.create_index('ix_renewals_inventory_id', 'renewals', ['inventory_id'])
    op.create_index('ix_renewals_created', 'renewals', ['created_at'])

    # ============================================================================
    # binding_events + code_sequences
    # ============================================================================
    op.create_table(
        'binding_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('event_category', sa.String(length=32), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('inventory_id', sa.Integer(), nullable=True),
        sa.Column('slot_keys', sa.JSON(), nullable=True),
        sa.Column('actor', sa.String(length=64), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_binding_events_event_type', 'binding_events', ['event_type'])
    op.create_index('ix_binding_events_event_category', 'binding_events', ['event_category'])
    op.create_index('ix_binding_events_order_id', 'binding_events', ['order_id'])
    op.create_index('ix_binding_events_inventory_id', 'binding_events', ['inventory_id'])
    op.create_index('ix_binding_events_occurred_at', 'binding_events', ['occurred_at'])
    op.create_index('ix_binding_events_order_occurred', 'binding_events', ['order_id', 'occurred_at'])

    op.create_table(
        'code_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('kind', name='uq_code_sequences_kind'),
        sqlite_autoincrement=True
    )


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('code_sequences')
    op.drop_table('binding_events')
    op.drop_table('renewals')
    op.drop_table('inventory_slots')
    op.drop_table('inventory')
    op.drop_table('orders')
    op.drop_table('customers')
    op.drop_table('packages')
    op.drop_table('products')
