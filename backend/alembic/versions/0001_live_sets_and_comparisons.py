from alembic import op
import sqlalchemy as sa

revision = "0001_live_sets_and_comparisons"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "live_set",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("artist_name", sa.String(), nullable=False),
        sa.Column("location_name", sa.String(), nullable=False),
        sa.Column("event_name", sa.String(), nullable=True),
        sa.Column("event_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default="manual"),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("bucket", sa.String(), nullable=False),
        sa.Column("rating", sa.Float(), nullable=False, server_default="1500"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint(
            "bucket IN ('liked', 'neutral', 'disliked')", name="ck_live_set_bucket"
        ),
    )
    op.create_index("ix_live_set_owner_bucket", "live_set", ["owner_id", "bucket"])

    op.create_table(
        "comparison",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column(
            "winner_set_id", sa.String(), sa.ForeignKey("live_set.id"), nullable=False
        ),
        sa.Column(
            "loser_set_id", sa.String(), sa.ForeignKey("live_set.id"), nullable=False
        ),
        sa.Column("comparison_key", sa.String(64), nullable=False),
        sa.Column(
            "compared_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("comparison_key", name="uq_comparison_comparison_key"),
        sa.CheckConstraint(
            "winner_set_id <> loser_set_id", name="ck_comparison_distinct_sets"
        ),
    )


def downgrade():
    op.drop_table("comparison")
    op.drop_index("ix_live_set_owner_bucket", table_name="live_set")
    op.drop_table("live_set")
