"""Initial schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Creates initial database tables:
- stories: Branching story roots
- story_segments: Generated pages with choices and media status
- story_visual_state: Story bible per story
- user_characters: Reusable characters
- subscribers: Stripe subscription mirror
- user_founders: Founder program membership
- user_usage: Monthly usage counters
- user_feedback: Feedback widget submissions
- waitlist: Waitlist signups
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

GENERATION_STATUSES = ("not_started", "pending", "in_progress", "completed", "failed", "skipped")


def _generation_status() -> postgresql.ENUM:
    return postgresql.ENUM(*GENERATION_STATUSES, name="generation_status", create_type=False)


def upgrade() -> None:
    """Create all initial tables."""
    # Create enum types
    op.execute(
        "CREATE TYPE generation_status AS ENUM "
        "('not_started', 'pending', 'in_progress', 'completed', 'failed', 'skipped')"
    )
    op.execute("CREATE TYPE founder_tier AS ENUM ('genesis', 'pioneer', 'early_adopter')")
    op.execute("CREATE TYPE feedback_type AS ENUM ('bug', 'feature', 'general', 'praise')")
    op.execute("CREATE TYPE feedback_priority AS ENUM ('low', 'medium', 'high')")
    op.execute("CREATE TYPE feedback_status AS ENUM ('new', 'in_progress', 'resolved', 'closed')")

    # Create stories table
    op.create_table(
        "stories",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("story_mode", sa.String(length=100), nullable=False, server_default="fantasy-magic"),
        sa.Column("target_age", sa.String(length=10), nullable=False, server_default="7-9"),
        sa.Column("is_completed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("segment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("thumbnail_url", sa.String(length=1000), nullable=True),
        sa.Column("audio_generation_status", _generation_status(), nullable=False, server_default="not_started"),
        sa.Column("full_story_audio_url", sa.String(length=1000), nullable=True),
        sa.Column("shotstack_status", sa.String(length=50), nullable=True),
        sa.Column("shotstack_video_url", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_stories_user_id", "stories", ["user_id"])
    op.create_index("ix_stories_is_public", "stories", ["is_public"])

    # Create story_segments table
    op.create_table(
        "story_segments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("story_id", sa.String(length=36), nullable=False),
        sa.Column("parent_segment_id", sa.String(length=36), nullable=True),
        sa.Column("segment_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("triggering_choice_text", sa.Text(), nullable=True),
        sa.Column("segment_text", sa.Text(), nullable=False),
        sa.Column("word_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("choices", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("is_end", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("image_prompt", sa.Text(), nullable=True),
        sa.Column("image_url", sa.String(length=1000), nullable=True),
        sa.Column("image_generation_status", _generation_status(), nullable=False, server_default="not_started"),
        sa.Column("audio_url", sa.String(length=1000), nullable=True),
        sa.Column("audio_duration", sa.Float(), nullable=True),
        sa.Column("audio_generation_status", _generation_status(), nullable=False, server_default="not_started"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["story_id"], ["stories.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_segment_id"], ["story_segments.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_story_segments_story_id", "story_segments", ["story_id"])

    # Create story_visual_state table
    op.create_table(
        "story_visual_state",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("story_id", sa.String(length=36), nullable=False),
        sa.Column(
            "character_descriptions",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column("style_hint", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["story_id"], ["stories.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_story_visual_state_story_id", "story_visual_state", ["story_id"], unique=True)

    # Create user_characters table
    op.create_table(
        "user_characters",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=50), nullable=True),
        sa.Column("traits", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("avatar_url", sa.String(length=1000), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_characters_user_id", "user_characters", ["user_id"])

    # Create subscribers table
    op.create_table(
        "subscribers",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("subscribed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("subscription_tier", sa.String(length=50), nullable=False, server_default="Free"),
        sa.Column("subscription_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscribers_user_id", "subscribers", ["user_id"], unique=True)
    op.create_index("ix_subscribers_stripe_customer_id", "subscribers", ["stripe_customer_id"])

    # Create user_founders table
    op.create_table(
        "user_founders",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("founder_number", sa.Integer(), nullable=False),
        sa.Column(
            "founder_tier",
            postgresql.ENUM("genesis", "pioneer", "early_adopter", name="founder_tier", create_type=False),
            nullable=False,
        ),
        sa.Column("lifetime_discount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("benefits", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("signed_up_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("founder_number"),
    )
    op.create_index("ix_user_founders_user_id", "user_founders", ["user_id"], unique=True)

    # Create user_usage table
    op.create_table(
        "user_usage",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("month_year", sa.String(length=7), nullable=False),
        sa.Column("stories_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("images_generated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("voice_generations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("narrated_minutes_used", sa.Float(), nullable=False, server_default="0.0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "month_year", name="uq_user_usage_month"),
    )
    op.create_index("ix_user_usage_user_id", "user_usage", ["user_id"])

    # Create user_feedback table
    op.create_table(
        "user_feedback",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column(
            "feedback_type",
            postgresql.ENUM("bug", "feature", "general", "praise", name="feedback_type", create_type=False),
            nullable=False,
            server_default="general",
        ),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("page_url", sa.String(length=1000), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.Column(
            "priority",
            postgresql.ENUM("low", "medium", "high", name="feedback_priority", create_type=False),
            nullable=False,
            server_default="medium",
        ),
        sa.Column(
            "status",
            postgresql.ENUM("new", "in_progress", "resolved", "closed", name="feedback_status", create_type=False),
            nullable=False,
            server_default="new",
        ),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_feedback_user_id", "user_feedback", ["user_id"])

    # Create waitlist table
    op.create_table(
        "waitlist",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False, server_default=""),
        sa.Column("marketing_consent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_waitlist_email", "waitlist", ["email"], unique=True)


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_index("ix_waitlist_email", table_name="waitlist")
    op.drop_table("waitlist")

    op.drop_index("ix_user_feedback_user_id", table_name="user_feedback")
    op.drop_table("user_feedback")

    op.drop_index("ix_user_usage_user_id", table_name="user_usage")
    op.drop_table("user_usage")

    op.drop_index("ix_user_founders_user_id", table_name="user_founders")
    op.drop_table("user_founders")

    op.drop_index("ix_subscribers_stripe_customer_id", table_name="subscribers")
    op.drop_index("ix_subscribers_user_id", table_name="subscribers")
    op.drop_table("subscribers")

    op.drop_index("ix_user_characters_user_id", table_name="user_characters")
    op.drop_table("user_characters")

    op.drop_index("ix_story_visual_state_story_id", table_name="story_visual_state")
    op.drop_table("story_visual_state")

    op.drop_index("ix_story_segments_story_id", table_name="story_segments")
    op.drop_table("story_segments")

    op.drop_index("ix_stories_is_public", table_name="stories")
    op.drop_index("ix_stories_user_id", table_name="stories")
    op.drop_table("stories")

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS feedback_status")
    op.execute("DROP TYPE IF EXISTS feedback_priority")
    op.execute("DROP TYPE IF EXISTS feedback_type")
    op.execute("DROP TYPE IF EXISTS founder_tier")
    op.execute("DROP TYPE IF EXISTS generation_status")
