"""initial migration

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy import text

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

EVENT_TYPES = ('REQUEST', 'CONNECTION', 'RATE_LIMITED', 'DDOS', 'ABUSE', 'BLOCK', 'UNBLOCK')
LIST_TYPES = ('WHITELIST', 'BLACKLIST', 'TEMPORARY')


def _ensure_enum(conn, name: str, values: tuple) -> postgresql.ENUM:
    exists = conn.execute(
        text("SELECT EXISTS (SELECT 1 FROM pg_type WHERE typname = :name)"),
        {"name": name}
    ).scalar()
    if not exists:
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(text(f"CREATE TYPE {name} AS ENUM ({labels})"))
    return postgresql.ENUM(*values, name=name, create_type=False)


def upgrade() -> None:
    conn = op.get_bind()

    if conn.dialect.name == 'postgresql':
        eventtype_enum = _ensure_enum(conn, 'eventtype', EVENT_TYPES)
        iplisttype_enum = _ensure_enum(conn, 'iplisttype', LIST_TYPES)
    else:
        eventtype_enum = sa.Enum(*EVENT_TYPES, name='eventtype')
        iplisttype_enum = sa.Enum(*LIST_TYPES, name='iplisttype')

    op.create_table(
        'security_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ip_address', sa.String(length=45), nullable=False),
        sa.Column('endpoint', sa.String(), nullable=True),
        sa.Column('api_key', sa.String(), nullable=True),
        sa.Column('event_type', eventtype_enum, nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('user_agent', sa.String(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_security_events_id'), 'security_events', ['id'], unique=False)
    op.create_index(op.f('ix_security_events_ip_address'), 'security_events', ['ip_address'], unique=False)
    op.create_index(op.f('ix_security_events_endpoint'), 'security_events', ['endpoint'], unique=False)
    op.create_index(op.f('ix_security_events_api_key'), 'security_events', ['api_key'], unique=False)
    op.create_index(op.f('ix_security_events_event_type'), 'security_events', ['event_type'], unique=False)
    op.create_index(op.f('ix_security_events_occurred_at'), 'security_events', ['occurred_at'], unique=False)
    op.create_index(
        'ix_security_events_ip_type_time',
        'security_events',
        ['ip_address', 'event_type', 'occurred_at'],
        unique=False
    )

    op.create_table(
        'ip_list_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ip_address', sa.String(length=45), nullable=False),
        sa.Column('list_type', iplisttype_enum, nullable=False),
        sa.Column('reason', sa.String(), nullable=True),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('added_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_ip_list_entries_id'), 'ip_list_entries', ['id'], unique=False)
    op.create_index(op.f('ix_ip_list_entries_ip_address'), 'ip_list_entries', ['ip_address'], unique=False)
    op.create_index(op.f('ix_ip_list_entries_list_type'), 'ip_list_entries', ['list_type'], unique=False)
    op.create_index(op.f('ix_ip_list_entries_expires_at'), 'ip_list_entries', ['expires_at'], unique=False)

    op.create_table(
        'rate_limit_resets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ip_address', sa.String(length=45), nullable=False),
        sa.Column('endpoint', sa.String(), nullable=True),
        sa.Column('last_event_id', sa.Integer(), nullable=False),
        sa.Column('reset_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_rate_limit_resets_id'), 'rate_limit_resets', ['id'], unique=False)
    op.create_index('ix_rate_limit_resets_ip_endpoint', 'rate_limit_resets', ['ip_address', 'endpoint'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_rate_limit_resets_ip_endpoint', table_name='rate_limit_resets')
    op.drop_index(op.f('ix_rate_limit_resets_id'), table_name='rate_limit_resets')
    op.drop_table('rate_limit_resets')

    op.drop_index(op.f('ix_ip_list_entries_expires_at'), table_name='ip_list_entries')
    op.drop_index(op.f('ix_ip_list_entries_list_type'), table_name='ip_list_entries')
    op.drop_index(op.f('ix_ip_list_entries_ip_address'), table_name='ip_list_entries')
    op.drop_index(op.f('ix_ip_list_entries_id'), table_name='ip_list_entries')
    op.drop_table('ip_list_entries')

    op.drop_index('ix_security_events_ip_type_time', table_name='security_events')
    op.drop_index(op.f('ix_security_events_occurred_at'), table_name='security_events')
    op.drop_index(op.f('ix_security_events_event_type'), table_name='security_events')
    op.drop_index(op.f('ix_security_events_api_key'), table_name='security_events')
    op.drop_index(op.f('ix_security_events_endpoint'), table_name='security_events')
    op.drop_index(op.f('ix_security_events_ip_address'), table_name='security_events')
    op.drop_index(op.f('ix_security_events_id'), table_name='security_events')
    op.drop_table('security_events')

    if op.get_bind().dialect.name == 'postgresql':
        op.execute(text("DROP TYPE IF EXISTS iplisttype"))
        op.execute(text("DROP TYPE IF EXISTS eventtype"))
