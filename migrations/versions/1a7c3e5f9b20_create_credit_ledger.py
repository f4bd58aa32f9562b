"""create credit ledger, catalog, usage and subscription tables

Revision ID: 1a7c3e5f9b20
Revises:
Create Date: 2025-06-20 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '1a7c3e5f9b20'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # 1) reference data
    tiers = op.create_table(
        'subscription_tiers',
        sa.Column('id', sa.String(length=50), primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('monthly_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_rollover', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    packages = op.create_table(
        'credit_packages',
        sa.Column('id', sa.String(length=50), primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('credits', sa.Integer(), nullable=False),
        sa.Column('bonus_credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_subscription_tiers_active', 'subscription_tiers', ['is_active', 'sort_order'])
    op.create_index('ix_credit_packages_active', 'credit_packages', ['is_active', 'sort_order'])

    # 2) one balance row per user
    op.create_table(
        'credit_balances',
        sa.Column('user_id', sa.String(length=64), primary_key=True),
        sa.Column('current_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_earned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_purchased', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscription_tier_id', sa.String(length=50),
                  sa.ForeignKey('subscription_tiers.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('last_monthly_grant', sa.DateTime(), nullable=True),
        sa.Column('tx_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('current_balance >= 0', name='ck_credit_balance_non_negative'),
    )

    # 3) append-only ledger
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False, index=True),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=20), nullable=False),  # earned|spent|purchased|granted|expired|refunded
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('source_type', sa.String(length=20), nullable=False),
        sa.Column('source_id', sa.String(length=255), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('user_id', 'seq', name='uq_credit_tx_user_seq'),
        sa.UniqueConstraint('user_id', 'source_type', 'source_id', name='uq_credit_tx_source'),
        sa.CheckConstraint('balance_after = balance_before + amount', name='ck_credit_tx_balance_chain'),
    )
    op.create_index('ix_credit_tx_user_created', 'credit_transactions', ['user_id', 'created_at'])

    # 4) analytics
    op.create_table(
        'message_costs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('message_id', sa.String(length=255), nullable=False, unique=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('conversation_id', sa.String(length=255), nullable=True),
        sa.Column('avatar_id', sa.String(length=100), nullable=False),
        sa.Column('input_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('output_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_charged', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('api_cost_cents', sa.Float(), nullable=False, server_default='0'),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('model_name', sa.String(length=100), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_message_costs_user_created', 'message_costs', ['user_id', 'created_at'])

    # 5) subscriptions
    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False, index=True),
        sa.Column('tier_id', sa.String(length=50),
                  sa.ForeignKey('subscription_tiers.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('credits_allocated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )

    # One active subscription per user
    bind = op.get_bind()
    dialect = bind.dialect.name if bind is not None else None
    if dialect in ('postgresql', 'sqlite'):
        op.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_user_subscriptions_active
            ON user_subscriptions (user_id)
            WHERE status = 'active'
        """)

    # 6) seed catalog
    op.bulk_insert(tiers, [
        {'id': 'free', 'name': 'Free', 'monthly_credits': 10, 'max_rollover': 10, 'price_cents': 0,
         'features': ['Access to Carl Jung avatar', 'Basic mood tracking', 'Limited history'],
         'is_active': True, 'sort_order': 0},
        {'id': 'basic', 'name': 'Basic', 'monthly_credits': 150, 'max_rollover': 75, 'price_cents': 999,
         'features': ['All avatars available', 'Complete feature access'],
         'is_active': True, 'sort_order': 1},
        {'id': 'premium', 'name': 'Premium', 'monthly_credits': 400, 'max_rollover': 200, 'price_cents': 1999,
         'features': ['Advanced analytics', 'Export capabilities'],
         'is_active': True, 'sort_order': 2},
        {'id': 'professional', 'name': 'Professional', 'monthly_credits': 1000, 'max_rollover': 500,
         'price_cents': 3999, 'features': ['API access potential', 'Custom training options'],
         'is_active': True, 'sort_order': 3},
    ])
    op.bulk_insert(packages, [
        {'id': 'starter', 'name': 'Starter Pack', 'description': 'Perfect for trying the app',
         'credits': 50, 'bonus_credits': 0, 'price_cents': 499, 'is_active': True, 'sort_order': 0},
        {'id': 'popular', 'name': 'Popular Pack', 'description': 'Best value proposition',
         'credits': 250, 'bonus_credits': 50, 'price_cents': 1999, 'is_active': True, 'sort_order': 1},
        {'id': 'professional', 'name': 'Professional Pack', 'description': 'Heavy user option',
         'credits': 500, 'bonus_credits': 150, 'price_cents': 3499, 'is_active': True, 'sort_order': 2},
        {'id': 'unlimited', 'name': 'Unlimited Pack', 'description': 'Maximum value',
         'credits': 1000, 'bonus_credits': 400, 'price_cents': 5999, 'is_active': True, 'sort_order': 3},
    ])


def downgrade():
    bind = op.get_bind()
    dialect = bind.dialect.name if bind is not None else None
    if dialect in ('postgresql', 'sqlite'):
        op.execute("DROP INDEX IF EXISTS uq_user_subscriptions_active")
    op.drop_table('user_subscriptions')
    op.drop_index('ix_message_costs_user_created', table_name='message_costs')
    op.drop_table('message_costs')
    op.drop_index('ix_credit_tx_user_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
    op.drop_index('ix_credit_packages_active', table_name='credit_packages')
    op.drop_index('ix_subscription_tiers_active', table_name='subscription_tiers')
    op.drop_table('credit_packages')
    op.drop_table('subscription_tiers')
