"""initial schema

Revision ID: t0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the tilebooks schema:
- products: catalog with four (boxes, pieces) counters
- customers: profile + running financial aggregates
- invoices / invoice_lines / payments
- returns / return_lines
- stock_history: append-only ledger of counter mutations
- damaged_inventory: physical damaged stock register

All money columns are integer paise.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 't0001'
down_revision = None
branch_labels = None
depends_on = None


def _quantity(prefix):
    return [
        sa.Column(f'{prefix}_boxes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column(f'{prefix}_pieces', sa.Integer(), nullable=False, server_default='0'),
    ]


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade():
    # ============================================================================
    # products
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('sub_type', sa.String(length=64), nullable=True),
        sa.Column('size', sa.String(length=32), nullable=False),
        sa.Column('pieces_per_box', sa.Integer(), nullable=False),
        *_quantity('stock'),
        *_quantity('sales'),
        *_quantity('damage'),
        *_quantity('returns'),
        sa.Column('price_per_box', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost_per_box', sa.Integer(), nullable=True),
        sa.Column('hsn_no', sa.String(length=32), nullable=True),
        sa.Column('brand', sa.String(length=128), nullable=True),
        sa.Column('location', sa.String(length=128), nullable=True),
        sa.Column('images', sa.JSON(), nullable=False),
        sa.Column('link_3d', sa.String(length=512), nullable=True),
        sa.Column('low_stock_threshold', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku', name='uq_products_sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_name', 'products', ['name'])
    op.create_index('ix_products_active', 'products', ['is_active'])
    op.create_index('ix_products_classification', 'products', ['name', 'type', 'sub_type', 'size'])

    # ============================================================================
    # customers
    # ============================================================================
    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('gst_number', sa.String(length=32), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('total_purchase_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_paid_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('outstanding_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_invoices', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_purchase_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('phone', name='uq_customers_phone'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_customers_name', 'customers', ['name'])
    op.create_index('ix_customers_outstanding', 'customers', ['outstanding_balance'])
    op.create_index('ix_customers_is_active', 'customers', ['is_active'])

    # ============================================================================
    # invoices
    # ============================================================================
    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=False),
        sa.Column('invoice_type', sa.String(length=16), nullable=False, server_default='NON_GST'),
        sa.Column('invoice_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sales_channel', sa.String(length=16), nullable=False, server_default='OFFLINE'),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('customer_address', sa.Text(), nullable=True),
        sa.Column('customer_gst_number', sa.String(length=32), nullable=True),
        *[
            sa.Column(name, sa.Integer(), nullable=False, server_default='0')
            for name in (
                'subtotal', 'bill_discount', 'discount', 'cgst', 'sgst', 'igst',
                'total_tax', 'total_before_discount', 'invoice_value', 'total_amount',
                'round_off_amount', 'final_amount',
            )
        ],
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('total_paid', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pending_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_history', sa.JSON(), nullable=False),
        sa.Column('is_returned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('return_date', sa.DateTime(timezone=True), nullable=True),
        *[
            sa.Column(name, sa.Integer(), nullable=False, server_default='0')
            for name in (
                'total_refund_amount', 'total_return_credit',
                'used_return_credit', 'available_return_credit',
            )
        ],
        sa.Column('returns_history', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='ACTIVE'),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number', name='uq_invoices_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_invoices_customer', 'invoices', ['customer_id'])
    op.create_index('ix_invoices_date', 'invoices', ['invoice_date'])
    op.create_index('ix_invoices_payment_status', 'invoices', ['payment_status'])
    op.create_index('ix_invoices_next_due', 'invoices', ['next_due_date'])
    op.create_index('ix_invoices_created_at', 'invoices', ['created_at'])

    op.create_table(
        'invoice_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('is_custom', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('product_type', sa.String(length=64), nullable=True),
        sa.Column('product_size', sa.String(length=32), nullable=True),
        sa.Column('hsn_no', sa.String(length=32), nullable=True),
        sa.Column('boxes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pieces', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pieces_per_box', sa.Integer(), nullable=False),
        sa.Column('price_per_box', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_per_piece', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('item_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_rate', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_invoice_lines_invoice', 'invoice_lines', ['invoice_id', 'position'])
    op.create_index('ix_invoice_lines_product_id', 'invoice_lines', ['product_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payment_number', sa.String(length=64), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='CASH'),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('transaction_id', sa.String(length=128), nullable=True),
        sa.Column('next_due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('remaining_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_number', name='uq_payments_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payments_customer_date', 'payments', ['customer_id', 'payment_date'])
    op.create_index('ix_payments_invoice_id', 'payments', ['invoice_id'])
    op.create_index('ix_payments_customer_id', 'payments', ['customer_id'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])

    # ============================================================================
    # returns
    # ============================================================================
    op.create_table(
        'returns',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('return_number', sa.String(length=64), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('customer_phone', sa.String(length=32), nullable=True),
        sa.Column('customer_address', sa.Text(), nullable=True),
        sa.Column('total_return_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('return_type', sa.String(length=16), nullable=False, server_default='CREDIT'),
        sa.Column('credit_generated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credit_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credit_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refund_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refund_method', sa.String(length=32), nullable=False, server_default='CASH'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='APPROVED'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('processed_by', sa.String(length=128), nullable=True),
        sa.Column('stock_adjusted', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('return_number', name='uq_returns_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_returns_customer_type', 'returns', ['customer_id', 'return_type'])
    op.create_index('ix_returns_invoice_id', 'returns', ['invoice_id'])
    op.create_index('ix_returns_created_at', 'returns', ['created_at'])

    op.create_table(
        'return_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('return_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('product_type', sa.String(length=64), nullable=True),
        sa.Column('product_size', sa.String(length=32), nullable=True),
        sa.Column('pieces_per_box', sa.Integer(), nullable=False),
        sa.Column('boxes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pieces', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('original_price_per_box', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('original_item_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('return_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('return_reason', sa.String(length=32), nullable=False, server_default='OTHER'),
        sa.Column('condition', sa.String(length=16), nullable=False, server_default='GOOD'),
        sa.ForeignKeyConstraint(['return_id'], ['returns.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_return_lines_return_id', 'return_lines', ['return_id'])
    op.create_index('ix_return_lines_product_id', 'return_lines', ['product_id'])

    # ============================================================================
    # stock_history: append-only ledger
    # ============================================================================
    op.create_table(
        'stock_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        *_quantity('change'),
        sa.Column('replacement_boxes', sa.Integer(), nullable=True),
        sa.Column('replacement_pieces', sa.Integer(), nullable=True),
        *_quantity('quantity'),
        sa.Column('counters', sa.JSON(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('performed_by', sa.String(length=128), nullable=True),
        sa.Column('damage_type', sa.String(length=32), nullable=True),
        sa.Column('damage_reason', sa.String(length=255), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('related_product_id', sa.Integer(), nullable=True),
        sa.Column('related_transaction_id', sa.Integer(), nullable=True),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['related_product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['related_transaction_id'], ['stock_history.id']),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_history_product_id', 'stock_history', ['product_id'])
    op.create_index('ix_stock_history_action', 'stock_history', ['action'])
    op.create_index('ix_stock_history_created_at', 'stock_history', ['created_at'])
    op.create_index('ix_stock_history_product_created', 'stock_history', ['product_id', 'created_at'])
    op.create_index('ix_stock_history_invoice_action', 'stock_history', ['invoice_id', 'action'])

    # ============================================================================
    # damaged_inventory
    # ============================================================================
    op.create_table(
        'damaged_inventory',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('boxes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('pieces', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('damage_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('recorded_by', sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_damaged_inventory_product_id', 'damaged_inventory', ['product_id'])
    op.create_index('ix_damaged_type_status', 'damaged_inventory', ['damage_type', 'status'])
    op.create_index('ix_damaged_inventory_created_at', 'damaged_inventory', ['created_at'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('damaged_inventory')
    op.drop_table('stock_history')
    op.drop_table('return_lines')
    op.drop_table('returns')
    op.drop_table('payments')
    op.drop_table('invoice_lines')
    op.drop_table('invoices')
    op.drop_table('customers')
    op.drop_table('products')
