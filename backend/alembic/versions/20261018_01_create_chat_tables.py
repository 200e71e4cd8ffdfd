"""create chat users and messages

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_01"
down_revision = None
branch_labels = None
depends_on = None


# Row level security for clients reaching storage with their own identity.
# The server connects with an elevated role that bypasses these policies.
POSTGRES_POLICIES = (
    "ALTER TABLE users ENABLE ROW LEVEL SECURITY",
    "ALTER TABLE messages ENABLE ROW LEVEL SECURITY",
    'CREATE POLICY "Users are viewable by everyone" ON users FOR SELECT USING (true)',
    'CREATE POLICY "Users can update own data" ON users FOR UPDATE USING (auth.uid()::text = id)',
    'CREATE POLICY "Users can insert own data" ON users FOR INSERT WITH CHECK (auth.uid()::text = id)',
    'CREATE POLICY "Messages are viewable by everyone" ON messages FOR SELECT USING (true)',
    "CREATE POLICY \"Authenticated users can insert messages\" ON messages "
    "FOR INSERT WITH CHECK (auth.role() = 'authenticated')",
    'CREATE POLICY "Users can update own messages" ON messages '
    "FOR UPDATE USING (auth.uid()::text = sender_id)",
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("username", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("isonline", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("lastseen", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_users_online", "users", ["isonline"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("sender_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("recipient_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("chat_id", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("idx_messages_sender_id", "messages", ["sender_id"])
    op.create_index("idx_messages_recipient_id", "messages", ["recipient_id"])
    op.create_index("idx_messages_chat_id", "messages", ["chat_id"])

    if op.get_bind().dialect.name == "postgresql":
        for statement in POSTGRES_POLICIES:
            op.execute(statement)


def downgrade() -> None:
    op.drop_index("idx_messages_chat_id", table_name="messages")
    op.drop_index("idx_messages_recipient_id", table_name="messages")
    op.drop_index("idx_messages_sender_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("idx_users_online", table_name="users")
    op.drop_table("users")
