"""Create accounts, subscriptions, vehicles, reminders, messages and partner garage tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False, server_default=""),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="DRIVER"),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.PrimaryKeyConstraint("account_id"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.String(length=64), nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("plan", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_ceiling", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"]),
        sa.PrimaryKeyConstraint("subscription_id"),
        sa.UniqueConstraint("account_id"),
    )

    op.create_table(
        "vehicles",
        sa.Column("vehicle_id", sa.String(length=64), nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("registration", sa.String(length=16), nullable=False),
        sa.Column("make", sa.String(length=64), nullable=True),
        sa.Column("model", sa.String(length=64), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("mot_due_date", sa.Date(), nullable=True),
        sa.Column("tax_due_date", sa.Date(), nullable=True),
        sa.Column("insurance_due_date", sa.Date(), nullable=True),
        sa.Column("service_due_date", sa.Date(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"]),
        sa.PrimaryKeyConstraint("vehicle_id"),
        sa.UniqueConstraint("account_id", "registration", name="uq_vehicles_account_registration"),
    )
    op.create_index("ix_vehicles_account_id", "vehicles", ["account_id"])

    op.create_table(
        "reminders",
        sa.Column("reminder_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("vehicle_id", sa.String(length=64), nullable=False),
        sa.Column("reminder_type", sa.String(length=16), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.account_id"]),
        sa.ForeignKeyConstraint(["vehicle_id"], ["vehicles.vehicle_id"]),
        sa.PrimaryKeyConstraint("reminder_id"),
    )
    op.create_index("ix_reminders_account_id", "reminders", ["account_id"])
    op.create_index(
        "ix_reminders_vehicle_type_active",
        "reminders",
        ["vehicle_id", "reminder_type", "is_active"],
    )

    op.create_table(
        "messages",
        sa.Column("message_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("reminder_id", sa.Integer(), nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=8), nullable=False),
        sa.Column("recipient", sa.String(length=320), nullable=False),
        sa.Column("subject", sa.String(length=256), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("tries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_ref", sa.String(length=256), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["reminder_id"], ["reminders.reminder_id"]),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index("ix_messages_account_id", "messages", ["account_id"])
    op.create_index("ix_messages_status", "messages", ["status"])
    op.create_index("ix_messages_created_at", "messages", ["created_at"])
    op.create_index(
        "ix_messages_reminder_channel_created",
        "messages",
        ["reminder_id", "channel", "created_at"],
    )

    op.create_table(
        "partner_garages",
        sa.Column("garage_id", sa.String(length=64), nullable=False),
        sa.Column("account_id", sa.String(length=64), nullable=True),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("phone", sa.String(length=32), nullable=False),
        sa.Column("website", sa.String(length=256), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("garage_id"),
    )
    op.create_index("ix_partner_garages_account_id", "partner_garages", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_partner_garages_account_id", table_name="partner_garages")
    op.drop_table("partner_garages")
    op.drop_index("ix_messages_reminder_channel_created", table_name="messages")
    op.drop_index("ix_messages_created_at", table_name="messages")
    op.drop_index("ix_messages_status", table_name="messages")
    op.drop_index("ix_messages_account_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_reminders_vehicle_type_active", table_name="reminders")
    op.drop_index("ix_reminders_account_id", table_name="reminders")
    op.drop_table("reminders")
    op.drop_index("ix_vehicles_account_id", table_name="vehicles")
    op.drop_table("vehicles")
    op.drop_table("subscriptions")
    op.drop_table("accounts")
