"""add ddos detector state and alert dedup tables

Revision ID: 002
Revises: 001
Create Date: 2024-02-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'ddos_detector_states',
        sa.Column('scope', sa.String(length=2048), nullable=False),
        sa.Column('state', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('scope')
    )

    op.create_table(
        'alert_dedup',
        sa.Column('dedup_key', sa.String(length=512), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('dedup_key')
    )
    op.create_index(op.f('ix_alert_dedup_expires_at'), 'alert_dedup', ['expires_at'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_alert_dedup_expires_at'), table_name='alert_dedup')
    op.drop_table('alert_dedup')
    op.drop_table('ddos_detector_states')
