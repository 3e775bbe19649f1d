# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/alembic/versions/0001_initial_schema.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Initial schema: tools, fixed interfaces, OAuth configurations, tokens,
pending authorization flows and performance metrics.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2025-09-01 10:00:00.000000
"""

# Standard
from typing import Sequence, Union

# Third-Party
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "tools",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("endpoint", sa.String(length=767), nullable=False),
        sa.Column("transport", sa.String(length=20), nullable=False),
        sa.Column("capabilities", sa.JSON(), nullable=False),
        sa.Column("auth_type", sa.String(length=20), nullable=False),
        sa.Column("auth_value", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_tools"),
        sa.UniqueConstraint("name", name="uq_tools_name"),
    )

    op.create_table(
        "fixed_interfaces",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tool_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("schema_json", sa.JSON(), nullable=False),
        sa.Column("parameters_json", sa.JSON(), nullable=False),
        sa.Column("response_schema_json", sa.JSON(), nullable=False),
        sa.Column("version", sa.String(length=50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_validated", sa.DateTime(timezone=True), nullable=True),
        sa.Column("validation_errors", sa.JSON(), nullable=True),
        sa.Column("performance_score", sa.Float(), nullable=True),
        sa.Column("execution_count", sa.Integer(), nullable=False),
        sa.Column("success_count", sa.Integer(), nullable=False),
        sa.Column("average_response_time", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(["tool_id"], ["tools.id"], name="fk_fixed_interfaces_tool_id", ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id", name="pk_fixed_interfaces"),
        sa.UniqueConstraint("name", "tool_id", name="uq_fixed_interface_name_tool"),
    )
    op.create_index("idx_fixed_interfaces_tool_active", "fixed_interfaces", ["tool_id", "is_active"])

    op.create_table(
        "oauth_configurations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tool_id", sa.String(length=36), nullable=False),
        sa.Column("provider", sa.String(length=100), nullable=False),
        sa.Column("client_id", sa.String(length=255), nullable=False),
        sa.Column("client_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("authorization_url", sa.String(length=767), nullable=False),
        sa.Column("token_url", sa.String(length=767), nullable=False),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("redirect_uri", sa.String(length=767), nullable=False),
        sa.Column("pkce_enabled", sa.Boolean(), nullable=False),
        sa.Column("additional_params", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("authorization_url LIKE 'https://%' AND token_url LIKE 'https://%'", name="ck_oauth_configurations_https_endpoints"),
        sa.ForeignKeyConstraint(["tool_id"], ["tools.id"], name="fk_oauth_configurations_tool_id", ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_configurations"),
        sa.UniqueConstraint("tool_id", "provider", name="uq_oauth_configuration_tool_provider"),
    )

    op.create_table(
        "oauth_tokens",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tool_id", sa.String(length=36), nullable=False),
        sa.Column("config_id", sa.String(length=36), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_type", sa.String(length=20), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_refreshed", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("token_type IN ('Bearer', 'Basic')", name="ck_oauth_tokens_token_type"),
        sa.ForeignKeyConstraint(["tool_id"], ["tools.id"], name="fk_oauth_tokens_tool_id", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["config_id"], ["oauth_configurations.id"], name="fk_oauth_tokens_config_id", ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_tokens"),
        sa.UniqueConstraint("config_id", name="uq_oauth_token_config"),
    )
    op.create_index("idx_oauth_tokens_expires_at", "oauth_tokens", ["expires_at"])

    op.create_table(
        "oauth_pending_flows",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("config_id", sa.String(length=36), nullable=False),
        sa.Column("state", sa.String(length=255), nullable=False),
        sa.Column("code_verifier", sa.String(length=128), nullable=True),
        sa.Column("code_challenge", sa.String(length=128), nullable=True),
        sa.Column("redirect_uri", sa.String(length=767), nullable=False),
        sa.Column("scopes", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["config_id"], ["oauth_configurations.id"], name="fk_oauth_pending_flows_config_id", ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_pending_flows"),
        sa.UniqueConstraint("state", name="uq_oauth_pending_flows_state"),
    )
    op.create_index("idx_oauth_pending_flows_expires_at", "oauth_pending_flows", ["expires_at"])

    op.create_table(
        "performance_metrics",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("interface_id", sa.String(length=36), nullable=True),
        sa.Column("tool_id", sa.String(length=36), nullable=False),
        sa.Column("access_type", sa.String(length=20), nullable=False),
        sa.Column("operation_name", sa.String(length=255), nullable=False),
        sa.Column("response_time_ms", sa.Float(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_category", sa.String(length=20), nullable=True),
        sa.Column("error_details", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.CheckConstraint("access_type IN ('fixed', 'dynamic', 'discovery')", name="ck_performance_metrics_access_type"),
        sa.CheckConstraint("response_time_ms >= 0", name="ck_performance_metrics_response_time"),
        sa.ForeignKeyConstraint(["interface_id"], ["fixed_interfaces.id"], name="fk_performance_metrics_interface_id", ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id", name="pk_performance_metrics"),
    )
    op.create_index("idx_performance_metrics_tool_operation", "performance_metrics", ["tool_id", "operation_name", "timestamp"])
    op.create_index("idx_performance_metrics_interface", "performance_metrics", ["interface_id"])
    op.create_index("idx_performance_metrics_timestamp", "performance_metrics", ["timestamp"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("idx_performance_metrics_timestamp", table_name="performance_metrics")
    op.drop_index("idx_performance_metrics_interface", table_name="performance_metrics")
    op.drop_index("idx_performance_metrics_tool_operation", table_name="performance_metrics")
    op.drop_table("performance_metrics")
    op.drop_index("idx_oauth_pending_flows_expires_at", table_name="oauth_pending_flows")
    op.drop_table("oauth_pending_flows")
    op.drop_index("idx_oauth_tokens_expires_at", table_name="oauth_tokens")
    op.drop_table("oauth_tokens")
    op.drop_table("oauth_configurations")
    op.drop_index("idx_fixed_interfaces_tool_active", table_name="fixed_interfaces")
    op.drop_table("fixed_interfaces")
    op.drop_table("tools")
