"""capital calls: funds, deals, investors, ownership, calls and items

Revision ID: f1a2b3c4d5e6
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision = 'f1a2b3c4d5e6'
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column(
        'created_at',
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text('now()'),
    )


def upgrade() -> None:
    op.create_table(
        'funds',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('wire_instructions', sa.JSON(), nullable=True),
        # daily | weekly | none
        sa.Column('capital_call_summary_frequency', sa.String(20), nullable=False, server_default='daily'),
        _created_at(),
    )

    op.create_table(
        'deals',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'fund_id',
            UUID(as_uuid=True),
            sa.ForeignKey('funds.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column('name', sa.String(255), nullable=False),
        _created_at(),
    )

    op.create_table(
        'investors',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'fund_id',
            UUID(as_uuid=True),
            sa.ForeignKey('funds.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column('email', sa.String(320), nullable=False, index=True),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        _created_at(),
    )

    op.create_table(
        'deal_ownerships',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'deal_id',
            UUID(as_uuid=True),
            sa.ForeignKey('deals.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column(
            'investor_id',
            UUID(as_uuid=True),
            sa.ForeignKey('investors.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column('ownership_fraction', sa.Numeric(9, 8), nullable=False),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
        sa.UniqueConstraint('deal_id', 'investor_id'),
    )

    op.create_table(
        'capital_calls',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'fund_id',
            UUID(as_uuid=True),
            sa.ForeignKey('funds.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column('deal_id', UUID(as_uuid=True), sa.ForeignKey('deals.id'), nullable=False, index=True),
        sa.Column('total_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('deadline', sa.DateTime(timezone=True), nullable=False),
        # draft | sent | partial | funded | closed
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )

    op.create_table(
        'capital_call_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column(
            'capital_call_id',
            UUID(as_uuid=True),
            sa.ForeignKey('capital_calls.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column('investor_id', UUID(as_uuid=True), sa.ForeignKey('investors.id'), nullable=False, index=True),
        sa.Column('amount_due', sa.Numeric(14, 2), nullable=False),
        sa.Column('amount_received', sa.Numeric(14, 2), nullable=False, server_default='0'),
        # pending | partial | complete
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('wire_received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reminder_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_reminder_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint('capital_call_id', 'investor_id'),
    )


def downgrade() -> None:
    op.drop_table('capital_call_items')
    op.drop_table('capital_calls')
    op.drop_table('deal_ownerships')
    op.drop_table('investors')
    op.drop_table('deals')
    op.drop_table('funds')
