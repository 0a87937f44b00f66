"""Initial schema: users, servers, provisioning_logs

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

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
    # === users ===
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('hetzner_api_key_encrypted', sa.Text(), nullable=True),
        sa.Column('hetzner_project_id', sa.String(128), nullable=True),
        sa.Column('tailscale_api_key_encrypted', sa.Text(), nullable=True),
        sa.Column('tailscale_tailnet', sa.String(128), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # === servers ===
    op.create_table(
        'servers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('region', sa.String(20), nullable=False),
        sa.Column('server_type', sa.String(20), nullable=False),
        sa.Column('hetzner_server_id', sa.String(50), nullable=True),
        sa.Column('public_ip', sa.String(64), nullable=True),
        sa.Column('tailscale_name', sa.String(100), nullable=True),
        sa.Column('tailscale_domain', sa.String(255), nullable=True),
        sa.Column('tailscale_ip', sa.String(64), nullable=True),
        sa.Column('agents', sa.JSON(), nullable=False),
        sa.Column('agent_ports', sa.JSON(), nullable=False),
        sa.Column('username', sa.String(64), nullable=False, server_default=sa.text("'devbox'")),
        sa.Column('password_encrypted', sa.Text(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default=sa.text("'provisioning'")),
        sa.Column('status_message', sa.Text(), nullable=True),
        sa.Column('health_status', sa.String(20), nullable=True),
        sa.Column('last_health_check', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['owner_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_servers_owner_id', 'servers', ['owner_id'])
    op.create_index('ix_servers_status', 'servers', ['status'])

    # === provisioning_logs ===
    op.create_table(
        'provisioning_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('server_id', sa.Integer(), nullable=False),
        sa.Column('step', sa.String(100), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['server_id'], ['servers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_provisioning_logs_server_id', 'provisioning_logs', ['server_id'])


def downgrade() -> None:
    op.drop_table('provisioning_logs')
    op.drop_table('servers')
    op.drop_table('users')
