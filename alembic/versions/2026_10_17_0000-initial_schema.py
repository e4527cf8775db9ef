"""initial schema

Revision ID: 2026_10_17_0000
Revises:
Create Date: 2026-10-17 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_17_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('pubkey', sa.String(128), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('pubkey', name='uq_users_pubkey'),
    )

    # ========================================================================
    # Create developer_profiles table
    # ========================================================================
    op.create_table(
        'developer_profiles',
        sa.Column('user_id', UUID(as_uuid=True), primary_key=True),
        sa.Column('payout_ln_address', sa.String(320), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_developer_profiles_user', ondelete='CASCADE'),
    )

    # ========================================================================
    # Create games table
    # ========================================================================
    op.create_table(
        'games',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('developer_user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('slug', sa.String(128), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('slug', name='uq_games_slug'),
        sa.ForeignKeyConstraint(['developer_user_id'], ['users.id'], name='fk_games_developer', ondelete='RESTRICT'),
    )
    op.create_index('ix_games_developer_user_id', 'games', ['developer_user_id'])

    # ========================================================================
    # Create api_sessions table
    # ========================================================================
    op.create_table(
        'api_sessions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('origin', sa.String(255), nullable=False, server_default=''),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.ForeignKeyConstraint(['user_id'], ['users.id'], name='fk_api_sessions_user', ondelete='CASCADE'),
    )
    op.create_index('ix_api_sessions_user_id', 'api_sessions', ['user_id'])
    op.create_index('idx_api_sessions_expires_at', 'api_sessions', ['expires_at'])

    # ========================================================================
    # Create purchases table
    # ========================================================================
    op.create_table(
        'purchases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('buyer_user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('guest_receipt_code', sa.String(128), nullable=True),
        sa.Column('game_id', UUID(as_uuid=True), nullable=False),
        sa.Column('invoice_provider', sa.String(50), nullable=False),
        sa.Column('invoice_id', sa.String(256), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('amount_msat', sa.BigInteger(), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount_msat >= 0', name='ck_purchase_amount_non_negative'),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PAID', 'EXPIRED', 'FAILED')",
            name='ck_purchase_status',
        ),
        sa.UniqueConstraint('invoice_id', name='uq_purchases_invoice_id'),
        sa.UniqueConstraint('guest_receipt_code', name='uq_purchases_guest_receipt_code'),
        sa.ForeignKeyConstraint(['buyer_user_id'], ['users.id'], name='fk_purchases_buyer', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['game_id'], ['games.id'], name='fk_purchases_game', ondelete='RESTRICT'),
    )
    op.create_index('ix_purchases_buyer_user_id', 'purchases', ['buyer_user_id'])
    op.create_index('ix_purchases_game_id', 'purchases', ['game_id'])
    op.create_index('idx_purchases_status', 'purchases', ['status'])

    # ========================================================================
    # Create ledger_entries table (append-only)
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('purchase_id', UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('amount_msat', sa.BigInteger(), nullable=False),
        sa.Column('dedupe_key', sa.String(255), nullable=True),
        sa.Column('meta_json', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount_msat >= 0', name='ck_ledger_amount_non_negative'),
        sa.CheckConstraint(
            "type IN ('INVOICE_CREATED', 'INVOICE_PAID', 'PLATFORM_FEE', "
            "'DEVELOPER_NET', 'PAYOUT_SENT', 'PAYOUT_FAILED')",
            name='ck_ledger_entry_type',
        ),
        sa.UniqueConstraint('dedupe_key', name='uq_ledger_entries_dedupe_key'),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id'], name='fk_ledger_entries_purchase', ondelete='RESTRICT'),
    )
    op.create_index('ix_ledger_entries_purchase_id', 'ledger_entries', ['purchase_id'])
    op.create_index('idx_ledger_entries_purchase_type', 'ledger_entries', ['purchase_id', 'type'])
    op.create_index('idx_ledger_entries_created_at', 'ledger_entries', ['created_at'])

    # ========================================================================
    # Create entitlements table
    # ========================================================================
    op.create_table(
        'entitlements',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('purchase_id', UUID(as_uuid=True), nullable=False),
        sa.Column('buyer_user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('guest_receipt_code', sa.String(128), nullable=True),
        sa.Column('game_id', UUID(as_uuid=True), nullable=False),
        sa.Column('granted_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),

        sa.UniqueConstraint('purchase_id', name='uq_entitlements_purchase_id'),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id'], name='fk_entitlements_purchase', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['buyer_user_id'], ['users.id'], name='fk_entitlements_buyer', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['game_id'], ['games.id'], name='fk_entitlements_game', ondelete='RESTRICT'),
    )
    op.create_index('ix_entitlements_buyer_user_id', 'entitlements', ['buyer_user_id'])
    op.create_index('ix_entitlements_game_id', 'entitlements', ['game_id'])

    # ========================================================================
    # Create payouts table
    # ========================================================================
    op.create_table(
        'payouts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('purchase_id', UUID(as_uuid=True), nullable=False),
        sa.Column('developer_user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('destination_ln_address', sa.String(320), nullable=False),
        sa.Column('amount_msat', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='SCHEDULED'),
        sa.Column('provider', sa.String(50), nullable=True),
        sa.Column('provider_withdrawal_id', sa.String(128), nullable=True),
        sa.Column('provider_meta_json', JSONB(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount_msat >= 0', name='ck_payout_amount_non_negative'),
        sa.CheckConstraint('attempt_count >= 0', name='ck_payout_attempts_non_negative'),
        sa.CheckConstraint(
            "status IN ('SCHEDULED', 'SUBMITTED', 'SENT', 'FAILED', 'RETRYING', 'CANCELED')",
            name='ck_payout_status',
        ),
        sa.UniqueConstraint('purchase_id', name='uq_payouts_purchase_id'),
        sa.UniqueConstraint('idempotency_key', name='uq_payouts_idempotency_key'),
        sa.UniqueConstraint('provider_withdrawal_id', name='uq_payouts_provider_withdrawal_id'),
        sa.ForeignKeyConstraint(['purchase_id'], ['purchases.id'], name='fk_payouts_purchase', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['developer_user_id'], ['users.id'], name='fk_payouts_developer', ondelete='RESTRICT'),
    )
    op.create_index('ix_payouts_developer_user_id', 'payouts', ['developer_user_id'])
    op.create_index('idx_payouts_status', 'payouts', ['status'])
    op.create_index('idx_payouts_provider_withdrawal', 'payouts', ['provider', 'provider_withdrawal_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('payouts')
    op.drop_table('entitlements')
    op.drop_table('ledger_entries')
    op.drop_table('purchases')
    op.drop_table('api_sessions')
    op.drop_table('games')
    op.drop_table('developer_profiles')
    op.drop_table('users')
