"""Initial schema - teams, agents, sessions and monitoring tables.

Revision ID: 0001_initial
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(36), primary_key=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Teams
    op.create_table(
        "agent_teams",
        _id(),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="false"),
        sa.Column("budget_limit", sa.Numeric(12, 6), server_default="10.00"),
        sa.Column("budget_used", sa.Numeric(12, 6), server_default="0"),
        *_timestamps(),
    )
    op.create_index("idx_agent_teams_owner", "agent_teams", ["owner_id"])
    op.create_index("idx_agent_teams_project", "agent_teams", ["project_id"])

    # Personas (referenced by agents)
    op.create_table(
        "custom_personas",
        _id(),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("system_prompt", sa.Text(), nullable=False),
        sa.Column("suggested_role", sa.String(), nullable=True),
        sa.Column("tags", postgresql.JSONB(), server_default="[]"),
        sa.Column("is_public", sa.Boolean(), server_default="false"),
        sa.Column("usage_count", sa.Integer(), server_default="0"),
        *_timestamps(),
    )
    op.create_index("idx_custom_personas_owner", "custom_personas", ["owner_id"])

    # Agents
    op.create_table(
        "agents",
        _id(),
        sa.Column("team_id", sa.String(36), sa.ForeignKey("agent_teams.id", ondelete="CASCADE")),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("execution_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_enabled", sa.Boolean(), server_default="true"),
        sa.Column("can_adapt_role", sa.Boolean(), server_default="false"),
        sa.Column("available_roles", postgresql.JSONB(), nullable=True),
        sa.Column("current_role", sa.String(), nullable=False),
        sa.Column(
            "persona_id",
            sa.String(36),
            sa.ForeignKey("custom_personas.id", ondelete="SET NULL"),
            nullable=True,
        ),
        *_timestamps(),
    )
    op.create_index("idx_agents_team", "agents", ["team_id"])
    op.create_index("idx_agents_team_order", "agents", ["team_id", "execution_order"])

    # Role adaptation
    op.create_table(
        "role_assignment_rules",
        _id(),
        sa.Column("team_id", sa.String(36), sa.ForeignKey("agent_teams.id", ondelete="CASCADE")),
        sa.Column("project_type", sa.String(), nullable=True),
        sa.Column("trigger", sa.String(), nullable=False),
        sa.Column("from_role", sa.String(), nullable=False),
        sa.Column("to_role", sa.String(), nullable=False),
        sa.Column("condition", sa.Text(), nullable=False, server_default="true"),
        sa.Column("priority", sa.Integer(), server_default="0"),
        sa.Column("is_enabled", sa.Boolean(), server_default="true"),
        *_timestamps(),
    )
    op.create_index("idx_role_rules_team", "role_assignment_rules", ["team_id"])

    op.create_table(
        "role_assignment_history",
        _id(),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column("session_id", sa.String(36), nullable=True),
        sa.Column("from_role", sa.String(), nullable=False),
        sa.Column("to_role", sa.String(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=False),
        sa.Column("trigger_context", postgresql.JSONB(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_role_history_agent", "role_assignment_history", ["agent_id"])

    # Sessions
    op.create_table(
        "agent_sessions",
        _id(),
        sa.Column("team_id", sa.String(36), sa.ForeignKey("agent_teams.id", ondelete="CASCADE")),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("initial_prompt", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), server_default="running"),
        sa.Column("current_iteration", sa.Integer(), server_default="0"),
        sa.Column("max_iterations", sa.Integer(), server_default="10"),
        sa.Column("total_cost", sa.Numeric(12, 6), server_default="0"),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("run_token", sa.String(36), nullable=True),
        sa.Column("run_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index("idx_agent_sessions_team", "agent_sessions", ["team_id"])
    op.create_index("idx_agent_sessions_project", "agent_sessions", ["project_id"])
    op.create_index("idx_agent_sessions_owner", "agent_sessions", ["owner_id"])
    op.create_index("idx_agent_sessions_status", "agent_sessions", ["status", "updated_at"])

    op.create_table(
        "agent_messages",
        _id(),
        sa.Column(
            "session_id", sa.String(36), sa.ForeignKey("agent_sessions.id", ondelete="CASCADE")
        ),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("agents.id", ondelete="CASCADE")),
        sa.Column("iteration", sa.Integer(), nullable=False),
        sa.Column("message_type", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), server_default="{}"),
        sa.Column("cost", sa.Numeric(12, 6), server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_agent_messages_session", "agent_messages", ["session_id", "iteration"])
    op.create_index("idx_agent_messages_agent", "agent_messages", ["agent_id"])
    op.create_index("idx_agent_messages_created", "agent_messages", ["created_at"])

    op.create_table(
        "session_fallbacks",
        sa.Column(
            "session_id",
            sa.String(36),
            sa.ForeignKey("agent_sessions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("response", sa.Text(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "session_events",
        _id(),
        sa.Column(
            "session_id", sa.String(36), sa.ForeignKey("agent_sessions.id", ondelete="CASCADE")
        ),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("agent", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_session_events_session", "session_events", ["session_id"])

    # Monitoring
    op.create_table(
        "api_usage_logs",
        _id(),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost", sa.Numeric(12, 6), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_api_usage_user_created", "api_usage_logs", ["user_id", "created_at"])


def downgrade() -> None:
    op.drop_table("api_usage_logs")
    op.drop_table("session_events")
    op.drop_table("session_fallbacks")
    op.drop_table("agent_messages")
    op.drop_table("agent_sessions")
    op.drop_table("role_assignment_history")
    op.drop_table("role_assignment_rules")
    op.drop_table("agents")
    op.drop_table("custom_personas")
    op.drop_table("agent_teams")
