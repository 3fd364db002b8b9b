"""Manufacturing execution schema with multi-tenancy and RLS.

- tenants, users, roles, user_roles
- items, work_centers
- boms, bom_lines, bom_operations
- stock_ledger_entries, stock_policies
- manufacturing_orders, work_orders

Also creates helper function set_tenant_id(uuid) to set the app.tenant_id GUC.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "c1a7d3e5f901"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TENANT_DEFAULT = sa.text("current_setting('app.tenant_id', true)::uuid")
UUID_DEFAULT = sa.text("uuid_generate_v4()")
NOW = sa.text("now()")

QTY = sa.Numeric(18, 6)

TENANT_SCOPED_TABLES = [
    "users",
    "roles",
    "user_roles",
    "items",
    "work_centers",
    "boms",
    "bom_lines",
    "bom_operations",
    "stock_ledger_entries",
    "stock_policies",
    "manufacturing_orders",
    "work_orders",
]


def _base_columns() -> list:
    return [
        sa.Column("id", sa.UUID(), primary_key=True, server_default=UUID_DEFAULT),
        sa.Column("tenant_id", sa.UUID(), nullable=False, server_default=TENANT_DEFAULT),
    ]


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
    ]


def _tenant_fk() -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE")


def _enable_rls_with_policy(table: str) -> None:
    op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY;")
    op.execute(
        f"""
        CREATE POLICY {table}_tenant_isolation ON {table}
        USING (tenant_id = current_setting('app.tenant_id', true)::uuid)
        WITH CHECK (tenant_id = current_setting('app.tenant_id', true)::uuid);
        """
    )


def upgrade() -> None:
    # Extensions
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp";')

    # Helper function to set tenant in the current session
    op.execute(
        """
        CREATE OR REPLACE FUNCTION set_tenant_id(p_tenant_id uuid)
        RETURNS void AS $$
        BEGIN
            PERFORM set_config('app.tenant_id', p_tenant_id::text, false);
        END;
        $$ LANGUAGE plpgsql;
        """
    )

    # SECURITY
    op.create_table(
        "tenants",
        sa.Column("id", sa.UUID(), primary_key=True, server_default=UUID_DEFAULT),
        sa.Column("name", sa.Text(), nullable=False, unique=True),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("hashed_password", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        _tenant_fk(),
        sa.UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
    )

    op.create_table(
        "roles",
        *_base_columns(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        _tenant_fk(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
    )

    op.create_table(
        "user_roles",
        *_base_columns(),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("role_id", sa.UUID(), nullable=False),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("tenant_id", "user_id", "role_id", name="uq_user_roles_tenant_user_role"),
    )

    # MASTER DATA
    op.create_table(
        "items",
        *_base_columns(),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("uom", sa.Text(), server_default=sa.text("'EA'"), nullable=False),
        sa.Column("item_type", sa.Text(), server_default=sa.text("'raw_material'"), nullable=False),
        sa.Column("standard_rate", QTY, server_default=sa.text("0"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        _tenant_fk(),
        sa.UniqueConstraint("tenant_id", "code", name="uq_items_tenant_code"),
    )

    op.create_table(
        "work_centers",
        *_base_columns(),
        sa.Column("code", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("capacity_per_hour", QTY, server_default=sa.text("1"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        _tenant_fk(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_work_centers_tenant_name"),
    )

    op.create_table(
        "boms",
        *_base_columns(),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("item_id", sa.UUID(), nullable=False),
        sa.Column("revision", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("tenant_id", "code", name="uq_boms_tenant_code"),
    )

    op.create_table(
        "bom_lines",
        *_base_columns(),
        sa.Column("bom_id", sa.UUID(), nullable=False),
        sa.Column("line_no", sa.Integer(), nullable=False),
        sa.Column("component_item_id", sa.UUID(), nullable=False),
        sa.Column("qty_per", QTY, nullable=False),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["bom_id"], ["boms.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["component_item_id"], ["items.id"], ondelete="RESTRICT"),
        sa.Index("ix_bom_lines_bom_id", "bom_id"),
    )

    op.create_table(
        "bom_operations",
        *_base_columns(),
        sa.Column("bom_id", sa.UUID(), nullable=False),
        sa.Column("work_center_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("duration_minutes", QTY, server_default=sa.text("0"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["bom_id"], ["boms.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["work_center_id"], ["work_centers.id"], ondelete="RESTRICT"),
        sa.Index("ix_bom_operations_bom_id", "bom_id"),
    )

    # INVENTORY
    op.create_table(
        "stock_ledger_entries",
        *_base_columns(),
        sa.Column("item_id", sa.UUID(), nullable=False),
        sa.Column("qty_delta", QTY, nullable=False),
        sa.Column("qty_after_transaction", QTY, nullable=False),
        sa.Column("rate", QTY, server_default=sa.text("0"), nullable=False),
        sa.Column("value_delta", QTY, server_default=sa.text("0"), nullable=False),
        sa.Column("voucher_type", sa.Text(), nullable=False),
        sa.Column("ref_type", sa.Text(), nullable=True),
        sa.Column("ref_id", sa.UUID(), nullable=True),
        sa.Column("posted_at", sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.UUID(), nullable=True),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"], ondelete="RESTRICT"),
        sa.Index("ix_stock_ledger_entries_tenant_item", "tenant_id", "item_id"),
        sa.Index("ix_stock_ledger_entries_ref", "ref_type", "ref_id"),
    )

    op.create_table(
        "stock_policies",
        *_base_columns(),
        sa.Column("voucher_type", sa.Text(), nullable=False),
        sa.Column("allow_negative", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        *_timestamps(),
        _tenant_fk(),
        sa.UniqueConstraint("tenant_id", "voucher_type", name="uq_stock_policies_tenant_voucher_type"),
    )

    # PRODUCTION
    op.create_table(
        "manufacturing_orders",
        *_base_columns(),
        sa.Column("order_no", sa.Text(), nullable=False),
        sa.Column("item_id", sa.UUID(), nullable=False),
        sa.Column("bom_id", sa.UUID(), nullable=True),
        sa.Column("planned_qty", QTY, nullable=False),
        sa.Column("produced_qty", QTY, server_default=sa.text("0"), nullable=False),
        sa.Column("state", sa.Text(), server_default=sa.text("'DRAFT'"), nullable=False),
        sa.Column("priority", sa.Text(), server_default=sa.text("'medium'"), nullable=False),
        sa.Column("planned_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planned_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.UUID(), nullable=True),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["item_id"], ["items.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["bom_id"], ["boms.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("tenant_id", "order_no", name="uq_manufacturing_orders_tenant_order_no"),
        sa.Index("ix_manufacturing_orders_state", "state"),
    )

    op.create_table(
        "work_orders",
        *_base_columns(),
        sa.Column("wo_number", sa.Text(), nullable=False),
        sa.Column("manufacturing_order_id", sa.UUID(), nullable=False),
        sa.Column("work_center_id", sa.UUID(), nullable=False),
        sa.Column("bom_operation_id", sa.UUID(), nullable=True),
        sa.Column("operation_name", sa.Text(), nullable=False),
        sa.Column("execution_order", sa.Integer(), nullable=False),
        sa.Column("is_parallel", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("planned_qty", QTY, nullable=False),
        sa.Column("duration_minutes", QTY, server_default=sa.text("0"), nullable=False),
        sa.Column("state", sa.Text(), server_default=sa.text("'TODO'"), nullable=False),
        sa.Column("assigned_to", sa.UUID(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        _tenant_fk(),
        sa.ForeignKeyConstraint(["manufacturing_order_id"], ["manufacturing_orders.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["work_center_id"], ["work_centers.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["bom_operation_id"], ["bom_operations.id"], ondelete="SET NULL"),
        sa.Index("ix_work_orders_manufacturing_order_id", "manufacturing_order_id"),
        sa.Index("ix_work_orders_work_center_id", "work_center_id"),
    )

    for tbl in TENANT_SCOPED_TABLES:
        op.create_index(f"ix_{tbl}_tenant_id", tbl, ["tenant_id"])

    # Enable RLS and add policies
    op.execute("ALTER TABLE tenants ENABLE ROW LEVEL SECURITY;")
    op.execute(
        """
        CREATE POLICY tenant_row_access ON tenants
        USING (id = current_setting('app.tenant_id', true)::uuid)
        WITH CHECK (id = current_setting('app.tenant_id', true)::uuid);
        """
    )
    for tbl in TENANT_SCOPED_TABLES:
        _enable_rls_with_policy(tbl)


def downgrade() -> None:
    # Drop RLS policies and disable RLS
    for tbl in reversed(TENANT_SCOPED_TABLES):
        op.execute(f"DROP POLICY IF EXISTS {tbl}_tenant_isolation ON {tbl};")
        op.execute(f"ALTER TABLE {tbl} DISABLE ROW LEVEL SECURITY;")
    op.execute("DROP POLICY IF EXISTS tenant_row_access ON tenants;")
    op.execute("ALTER TABLE tenants DISABLE ROW LEVEL SECURITY;")

    # Drop tables in reverse dependency order
    for tbl in reversed(TENANT_SCOPED_TABLES):
        op.drop_table(tbl)
    op.drop_table("tenants")
    op.execute("DROP FUNCTION IF EXISTS set_tenant_id(uuid);")
