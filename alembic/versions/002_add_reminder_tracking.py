"""add_reminder_tracking

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade():
    # Period end the last trial-ending or renewal reminder was sent for
    op.add_column('business_subscriptions', sa.Column('reminder_sent_for', sa.DateTime(), nullable=True))


def downgrade():
    op.drop_column('business_subscriptions', 'reminder_sent_for')
