"""Match lifecycle schema: tournament, participant, match, dispute, notification_log.

Revision ID: 001_match_lifecycle
Revises:
"""

from alembic import op
import sqlalchemy as sa


revision = "001_match_lifecycle"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # -----------------------------------------------------------------------
    # 1. participant - identity projection (id = user id)
    # -----------------------------------------------------------------------
    op.create_table(
        "participant",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    # -----------------------------------------------------------------------
    # 2. tournament
    # -----------------------------------------------------------------------
    op.create_table(
        "tournament",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("starts_at", sa.DateTime(), nullable=True),
        sa.Column("auto_confirm_minutes", sa.Integer(), nullable=True),
        sa.Column("champion_id", sa.Integer(), sa.ForeignKey("participant.id"), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    # -----------------------------------------------------------------------
    # 3. match - lifecycle, handshake flags, pending report, outcome
    # -----------------------------------------------------------------------
    op.create_table(
        "match",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tournament_id", sa.Integer(), sa.ForeignKey("tournament.id"), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("match_order", sa.Integer(), nullable=False),
        sa.Column("participant1_id", sa.Integer(), sa.ForeignKey("participant.id"), nullable=True),
        sa.Column("participant2_id", sa.Integer(), sa.ForeignKey("participant.id"), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="scheduled"),
        sa.Column("lock_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("participant1_ready", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("participant2_ready", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("participant1_active_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("participant2_active_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reported_by", sa.Integer(), nullable=True),
        sa.Column("participant1_score", sa.Integer(), nullable=True),
        sa.Column("participant2_score", sa.Integer(), nullable=True),
        sa.Column("evidence_ref", sa.String(), nullable=True),
        sa.Column("provisional_winner_id", sa.Integer(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(), nullable=True),
        sa.Column("ready_at", sa.DateTime(), nullable=True),
        sa.Column("active_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("live_at", sa.DateTime(), nullable=True),
        sa.Column("reported_at", sa.DateTime(), nullable=True),
        sa.Column("auto_confirm_at", sa.DateTime(), nullable=True),
        sa.Column("confirm_warning_sent_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("winner_id", sa.Integer(), nullable=True),
        sa.Column("confirmed_by", sa.Integer(), nullable=True),
        sa.Column("resolved_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tournament_id", "round_number", "match_order", name="uq_match_bracket_position"),
    )
    op.create_index("ix_match_tournament_id", "match", ["tournament_id"])
    op.create_index("ix_match_status", "match", ["status"])
    op.create_index("ix_match_auto_confirm_at", "match", ["auto_confirm_at"])

    # -----------------------------------------------------------------------
    # 4. dispute - arbitration cases, with the disputed report captured
    # -----------------------------------------------------------------------
    op.create_table(
        "dispute",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("match_id", sa.Integer(), sa.ForeignKey("match.id"), nullable=False),
        sa.Column("raised_by", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("evidence_ref", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("reported_by", sa.Integer(), nullable=True),
        sa.Column("participant1_score", sa.Integer(), nullable=True),
        sa.Column("participant2_score", sa.Integer(), nullable=True),
        sa.Column("resolution", sa.String(), nullable=True),
        sa.Column("resolved_by", sa.Integer(), nullable=True),
        sa.Column("resolved_winner_id", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_dispute_match_id", "dispute", ["match_id"])
    op.create_index("ix_dispute_status", "dispute", ["status"])

    # -----------------------------------------------------------------------
    # 5. notification_log - in-app inbox plus SMS delivery record
    # -----------------------------------------------------------------------
    op.create_table(
        "notification_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("match_id", sa.Integer(), nullable=True),
        sa.Column("message_type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("body", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False, server_default="in_app"),
        sa.Column("status", sa.String(), nullable=False, server_default="delivered"),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_notification_log_user_id", "notification_log", ["user_id"])
    op.create_index("ix_notification_log_match_id", "notification_log", ["match_id"])


def downgrade():
    op.drop_index("ix_notification_log_match_id", table_name="notification_log")
    op.drop_index("ix_notification_log_user_id", table_name="notification_log")
    op.drop_table("notification_log")
    op.drop_index("ix_dispute_status", table_name="dispute")
    op.drop_index("ix_dispute_match_id", table_name="dispute")
    op.drop_table("dispute")
    op.drop_index("ix_match_auto_confirm_at", table_name="match")
    op.drop_index("ix_match_status", table_name="match")
    op.drop_index("ix_match_tournament_id", table_name="match")
    op.drop_table("match")
    op.drop_table("tournament")
    op.drop_table("participant")
