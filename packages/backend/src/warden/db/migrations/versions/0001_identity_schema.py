"""Identity schema: users, emails, social logins, roles, grants, credentials

Learn: Email uniqueness is case-insensitive through a unique index on
lower(address). Every row owned by a user cascades on user deletion;
user_permissions.granted_by is set to NULL instead. role_permissions is
created empty; the application seeds it at startup.

Revision ID: 0001_identity_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_identity_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PERMISSIONS = (
    'user.view', 'user.create', 'user.update', 'user.delete',
    'business.create', 'business.update', 'business.delete',
    'permission.grant', 'role.assign',
)
ROLES = ('root', 'moderator')
PROVIDERS = ('google', 'facebook', 'github', 'discord')


def upgrade() -> None:
    app_permission = sa.Enum(*PERMISSIONS, name='app_permission')
    app_role = sa.Enum(*ROLES, name='app_role')
    social_provider = sa.Enum(*PROVIDERS, name='social_provider')

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'emails',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('address', sa.String(320), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_emails_user', 'emails', ['user_id'])
    op.create_index(
        'uq_emails_address_ci', 'emails', [sa.text('lower(address)')], unique=True
    )

    op.create_table(
        'social_logins',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email_id', sa.Uuid(), sa.ForeignKey('emails.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', social_provider, nullable=False),
        sa.Column('provider_subject', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('provider', 'provider_subject', name='uq_social_logins_provider_subject'),
    )
    op.create_index('idx_social_logins_user', 'social_logins', ['user_id'])

    op.create_table(
        'user_roles',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', app_role, nullable=False),
        sa.UniqueConstraint('user_id', 'role', name='uq_user_roles_user_role'),
    )

    op.create_table(
        'role_permissions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('role', app_role, nullable=False),
        sa.Column('permission', app_permission, nullable=False),
        sa.UniqueConstraint('role', 'permission', name='uq_role_permissions_role_permission'),
    )

    op.create_table(
        'user_permissions',
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('permission', app_permission, primary_key=True),
        sa.Column('granted_by', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'credentials',
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'revocation_watermarks',
        sa.Column('scope', sa.String(64), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=True),
        sa.Column('revoked_before', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('stream_id', sa.String(200), nullable=False),
        sa.Column('type', sa.String(100), nullable=False),
        sa.Column('data', postgresql.JSONB(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_events_stream', 'events', ['stream_id', 'id'])
    op.create_index('idx_events_type', 'events', ['type'])


def downgrade() -> None:
    op.drop_index('idx_events_type', table_name='events')
    op.drop_index('idx_events_stream', table_name='events')
    op.drop_table('events')
    op.drop_table('revocation_watermarks')
    op.drop_table('credentials')
    op.drop_table('user_permissions')
    op.drop_table('role_permissions')
    op.drop_table('user_roles')
    op.drop_index('idx_social_logins_user', table_name='social_logins')
    op.drop_table('social_logins')
    op.drop_index('uq_emails_address_ci', table_name='emails')
    op.drop_index('idx_emails_user', table_name='emails')
    op.drop_table('emails')
    op.drop_table('users')

    for name in ('social_provider', 'app_role', 'app_permission'):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
