"""Initial migration - ownership graph, processor configs, transactions, payments

Revision ID: 001_initial
Revises:
Create Date: 2026-10-16

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Ownership graph
    op.create_table(
        'owners',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'properties',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('owners.id'), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
    )
    op.create_index('ix_properties_owner_id', 'properties', ['owner_id'])
    op.create_table(
        'units',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('property_id', sa.String(36), sa.ForeignKey('properties.id'), nullable=True),
        sa.Column('unit_number', sa.String(50), nullable=True),
    )
    op.create_index('ix_units_property_id', 'units', ['property_id'])
    op.create_table(
        'leases',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('unit_id', sa.String(36), sa.ForeignKey('units.id'), nullable=True),
        sa.Column('tenant_id', sa.String(36), nullable=True),
    )
    op.create_index('ix_leases_unit_id', 'leases', ['unit_id'])
    op.create_index('ix_leases_tenant_id', 'leases', ['tenant_id'])
    op.create_table(
        'invoices',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('lease_id', sa.String(36), sa.ForeignKey('leases.id'), nullable=True),
        sa.Column('tenant_id', sa.String(36), nullable=True),
        sa.Column('invoice_number', sa.String(50), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('receipt_number', sa.String(64), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_invoices_lease_id', 'invoices', ['lease_id'])

    # Processor configuration
    op.create_table(
        'processor_configs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('owners.id'), nullable=False, unique=True),
        sa.Column('processor_kind', sa.String(30), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('environment', sa.String(20), nullable=False, server_default='sandbox'),
        sa.Column('shortcode', sa.String(20), nullable=False),
        sa.Column('consumer_key_encrypted', sa.Text(), nullable=True),
        sa.Column('consumer_secret_encrypted', sa.Text(), nullable=True),
        sa.Column('passkey_encrypted', sa.Text(), nullable=True),
        sa.Column('client_id', sa.String(255), nullable=True),
        sa.Column('client_secret_encrypted', sa.Text(), nullable=True),
        sa.Column('callback_url', sa.String(500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('credentials_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_table(
        'payment_preferences',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('owners.id'), nullable=False, unique=True),
        sa.Column('preference', sa.String(30), nullable=False, server_default='platform_default'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Transactions
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('correlation_id', sa.String(255), nullable=False, unique=True),
        sa.Column('merchant_request_id', sa.String(255), nullable=True),
        sa.Column('reference', sa.String(100), nullable=False),
        sa.Column('invoice_id', sa.String(36), sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('owner_id', sa.String(36), nullable=True),
        sa.Column('initiated_by', sa.String(36), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('phone_number', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('result_desc', sa.Text(), nullable=True),
        sa.Column('receipt_number', sa.String(64), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('finalized_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_invoice_id', 'transactions', ['invoice_id'])
    op.create_index('ix_transactions_reference', 'transactions', ['reference'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('transactions.id'), nullable=False, unique=True),
        sa.Column('invoice_id', sa.String(36), sa.ForeignKey('invoices.id'), nullable=False),
        sa.Column('lease_id', sa.String(36), nullable=True),
        sa.Column('tenant_id', sa.String(36), nullable=True),
        sa.Column('owner_id', sa.String(36), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('receipt_number', sa.String(64), nullable=True),
        sa.Column('payment_method', sa.String(30), nullable=False, server_default='mpesa'),
        sa.Column('paid_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payments_invoice_id', 'payments', ['invoice_id'])
    op.create_index('ix_payments_owner_id', 'payments', ['owner_id'])

    op.create_table(
        'transaction_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=True),
        sa.Column('result_code', sa.Integer(), nullable=True),
        sa.Column('source', sa.String(30), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transaction_events_transaction_id', 'transaction_events', ['transaction_id'])
    op.create_index('ix_transaction_events_event_type', 'transaction_events', ['event_type'])


def downgrade() -> None:
    op.drop_index('ix_transaction_events_event_type', table_name='transaction_events')
    op.drop_index('ix_transaction_events_transaction_id', table_name='transaction_events')
    op.drop_index('ix_payments_owner_id', table_name='payments')
    op.drop_index('ix_payments_invoice_id', table_name='payments')
    op.drop_index('ix_transactions_created_at', table_name='transactions')
    op.drop_index('ix_transactions_reference', table_name='transactions')
    op.drop_index('ix_transactions_invoice_id', table_name='transactions')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_invoices_lease_id', table_name='invoices')
    op.drop_index('ix_leases_tenant_id', table_name='leases')
    op.drop_index('ix_leases_unit_id', table_name='leases')
    op.drop_index('ix_units_property_id', table_name='units')
    op.drop_index('ix_properties_owner_id', table_name='properties')

    # Drop tables
    op.drop_table('transaction_events')
    op.drop_table('payments')
    op.drop_table('transactions')
    op.drop_table('payment_preferences')
    op.drop_table('processor_configs')
    op.drop_table('invoices')
    op.drop_table('leases')
    op.drop_table('units')
    op.drop_table('properties')
    op.drop_table('owners')
