"""initial enrollment and order schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENROLLMENT_STATUSES = ("PENDING", "ACTIVE", "COMPLETED", "CANCELLED", "WAITLIST")


def timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "classes",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("program_id", sa.String(length=36), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("session_count", sa.Integer(), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("installments_enabled", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_classes_program_id"), "classes", ["program_id"])

    op.create_table(
        "children",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_children_user_id"), "children", ["user_id"])

    op.create_table(
        "discount_codes",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column(
            "discount_type",
            sa.Enum("PERCENTAGE", "FIXED_AMOUNT", name="discounttype"),
            nullable=False,
        ),
        sa.Column("discount_value", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False),
        sa.Column("max_uses_per_user", sa.Integer(), nullable=True),
        sa.Column("min_order_amount", sa.Integer(), nullable=True),
        sa.Column("applicable_class_ids", sa.JSON(), nullable=False),
        sa.Column("applicable_program_ids", sa.JSON(), nullable=False),
        sa.Column("first_time_only", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "DRAFT",
                "PENDING_PAYMENT",
                "PARTIALLY_PAID",
                "PAID",
                "REFUNDED",
                "CANCELLED",
                name="orderstatus",
            ),
            nullable=False,
        ),
        sa.Column("subtotal", sa.Integer(), nullable=False),
        sa.Column("discount_total", sa.Integer(), nullable=False),
        sa.Column("tax", sa.Integer(), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("discount_code_id", sa.String(length=36), nullable=True),
        sa.Column("sibling_discount", sa.Integer(), nullable=False),
        sa.Column("authorization_token", sa.String(length=255), nullable=True),
        sa.Column("payment_method_ref", sa.String(length=255), nullable=True),
        sa.Column(
            "plan_type",
            sa.Enum("FULL", "SUBSCRIPTION", "INSTALLMENTS", name="paymentplantype"),
            nullable=True,
        ),
        sa.Column("installment_count", sa.Integer(), nullable=True),
        sa.Column("installment_frequency", sa.String(length=20), nullable=True),
        sa.Column("amount_paid", sa.Integer(), nullable=False),
        sa.Column("amount_refunded", sa.Integer(), nullable=False),
        sa.Column("requires_collections", sa.Boolean(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
        sa.ForeignKeyConstraint(["discount_code_id"], ["discount_codes.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_orders_user_id"), "orders", ["user_id"])
    op.create_index(op.f("ix_orders_status"), "orders", ["status"])
    op.create_index(op.f("ix_orders_discount_code_id"), "orders", ["discount_code_id"])
    op.create_index(
        op.f("ix_orders_authorization_token"), "orders", ["authorization_token"]
    )

    op.create_table(
        "order_line_items",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=36), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("class_id", sa.String(length=36), nullable=False),
        sa.Column("child_id", sa.String(length=36), nullable=False),
        sa.Column("unit_amount", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"]),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_order_line_items_order_id"), "order_line_items", ["order_id"]
    )
    op.create_index(
        op.f("ix_order_line_items_class_id"), "order_line_items", ["class_id"]
    )
    op.create_index(
        op.f("ix_order_line_items_child_id"), "order_line_items", ["child_id"]
    )

    op.create_table(
        "order_transactions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=36), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("PAYMENT", "REFUND", name="transactionkind"),
            nullable=False,
        ),
        sa.Column("reference", sa.String(length=255), nullable=False),
        sa.Column("source_reference", sa.String(length=255), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("note", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_order_transactions_order_id"), "order_transactions", ["order_id"]
    )

    op.create_table(
        "enrollments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("child_id", sa.String(length=36), nullable=False),
        sa.Column("class_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=36), nullable=True),
        sa.Column(
            "status", sa.Enum(*ENROLLMENT_STATUSES, name="enrollmentstatus"), nullable=False
        ),
        sa.Column("base_price", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False),
        sa.Column("final_price", sa.Integer(), nullable=False),
        sa.Column("discount_code", sa.String(length=50), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column(
            "refund_status",
            sa.Enum("NONE", "REFUNDED", "REFUND_PENDING", name="refundstatus"),
            nullable=False,
        ),
        sa.Column("refund_amount_due", sa.Integer(), nullable=False),
        sa.Column("refunded_amount", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
        sa.ForeignKeyConstraint(["child_id"], ["children.id"]),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_enrollments_child_id"), "enrollments", ["child_id"])
    op.create_index(op.f("ix_enrollments_class_id"), "enrollments", ["class_id"])
    op.create_index(op.f("ix_enrollments_user_id"), "enrollments", ["user_id"])
    op.create_index(op.f("ix_enrollments_order_id"), "enrollments", ["order_id"])
    op.create_index(
        "uq_enrollment_open_child_class",
        "enrollments",
        ["child_id", "class_id"],
        unique=True,
        sqlite_where=sa.text("status != 'CANCELLED'"),
        postgresql_where=sa.text("status != 'CANCELLED'"),
    )

    op.create_table(
        "enrollment_history",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("enrollment_id", sa.String(length=36), nullable=False),
        sa.Column(
            "from_status",
            postgresql.ENUM(
                *ENROLLMENT_STATUSES, name="enrollmentstatus", create_type=False
            ),
            nullable=True,
        ),
        sa.Column(
            "to_status",
            postgresql.ENUM(
                *ENROLLMENT_STATUSES, name="enrollmentstatus", create_type=False
            ),
            nullable=False,
        ),
        sa.Column("from_class_id", sa.String(length=36), nullable=True),
        sa.Column("to_class_id", sa.String(length=36), nullable=True),
        sa.Column("actor_id", sa.String(length=36), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_enrollment_history_enrollment_id"),
        "enrollment_history",
        ["enrollment_id"],
    )

    op.create_table(
        "waitlist_entries",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("class_id", sa.String(length=36), nullable=False),
        sa.Column("enrollment_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("is_priority", sa.Boolean(), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"]),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("enrollment_id"),
    )
    op.create_index(
        op.f("ix_waitlist_entries_class_id"), "waitlist_entries", ["class_id"]
    )
    op.create_index(
        op.f("ix_waitlist_entries_claim_expires_at"),
        "waitlist_entries",
        ["claim_expires_at"],
    )

    op.create_table(
        "installment_plans",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("num_installments", sa.Integer(), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("WEEKLY", "BIWEEKLY", "MONTHLY", name="installmentfrequency"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("payment_method_ref", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "ACTIVE",
                "COMPLETED",
                "CANCELLED",
                "DEFAULTED",
                name="installmentplanstatus",
            ),
            nullable=False,
        ),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_installment_plans_order_id"), "installment_plans", ["order_id"]
    )
    op.create_index(
        op.f("ix_installment_plans_user_id"), "installment_plans", ["user_id"]
    )

    op.create_table(
        "installment_payments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("installment_plan_id", sa.String(length=36), nullable=False),
        sa.Column("installment_number", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "SUCCEEDED", "FAILED", name="installmentpaymentstatus"),
            nullable=False,
        ),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("charge_id", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=100), nullable=True),
        sa.Column("attempt_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *timestamps(),
        sa.ForeignKeyConstraint(
            ["installment_plan_id"], ["installment_plans.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_installment_payments_due_date"), "installment_payments", ["due_date"]
    )

    op.create_table(
        "discount_code_usages",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("discount_code_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("order_id", sa.String(length=36), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["discount_code_id"], ["discount_codes.id"]),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
    )
    op.create_index(
        op.f("ix_discount_code_usages_discount_code_id"),
        "discount_code_usages",
        ["discount_code_id"],
    )
    op.create_index(
        op.f("ix_discount_code_usages_user_id"), "discount_code_usages", ["user_id"]
    )

    op.create_table(
        "attendances",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("enrollment_id", sa.String(length=36), nullable=False),
        sa.Column("class_id", sa.String(length=36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PRESENT",
                "ABSENT",
                "EXCUSED",
                name="attendancestatus",
                native_enum=False,
            ),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        *timestamps(),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"]),
        sa.ForeignKeyConstraint(["class_id"], ["classes.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "enrollment_id",
            "class_id",
            "date",
            name="unique_enrollment_class_date_attendance",
        ),
    )
    op.create_index(
        op.f("ix_attendances_enrollment_id"), "attendances", ["enrollment_id"]
    )
    op.create_index(op.f("ix_attendances_class_id"), "attendances", ["class_id"])
    op.create_index(op.f("ix_attendances_date"), "attendances", ["date"])


def downgrade() -> None:
    op.drop_table("attendances")
    op.drop_table("discount_code_usages")
    op.drop_table("installment_payments")
    op.drop_table("installment_plans")
    op.drop_table("waitlist_entries")
    op.drop_table("enrollment_history")
    op.drop_table("enrollments")
    op.drop_table("order_transactions")
    op.drop_table("order_line_items")
    op.drop_table("orders")
    op.drop_table("discount_codes")
    op.drop_table("children")
    op.drop_table("classes")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in (
            "discounttype",
            "orderstatus",
            "paymentplantype",
            "transactionkind",
            "enrollmentstatus",
            "refundstatus",
            "installmentfrequency",
            "installmentplanstatus",
            "installmentpaymentstatus",
        ):
            sa.Enum(name=name).drop(bind, checkfirst=True)
