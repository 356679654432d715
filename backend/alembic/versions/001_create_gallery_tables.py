"""Create gallery tables

Revision ID: 001
Revises: None
Create Date: 2024-06-01 00:00:00.000000+00:00

What:  Creates places, photos and admin_users.
Why:   Initial schema of the gallery; see app/models/ for column docs.

Constraints that the services rely on:
    - places.slug unique; (country_slug, location_slug, name_slug) unique
    - photos (place_id, photo_num) unique: renumbering goes through the
      negative range so no intermediate row collides
    - photos (place_id, slug) unique
    - photos.place_id → places.id ON DELETE CASCADE

Rollback: downgrade() drops all three tables (destructive).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "places",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("slug", sa.String(12), nullable=False, comment="Random public id"),
        sa.Column("country_slug", sa.String(40), nullable=False),
        sa.Column("location_slug", sa.String(40), nullable=False),
        sa.Column("name_slug", sa.String(40), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("location", sa.String(100), nullable=False),
        sa.Column("country", sa.String(100), nullable=False),
        sa.Column("start_date", sa.String(10), nullable=False, comment="YYYY-MM-DD"),
        sa.Column("end_date", sa.String(10), nullable=True, comment="YYYY-MM-DD"),
        sa.Column(
            "favorites",
            sa.Integer(),
            server_default=sa.text("0"),
            nullable=False,
            comment="Count of favorite selections, never decremented",
        ),
        sa.Column("sort_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
        sa.UniqueConstraint(
            "country_slug", "location_slug", "name_slug", name="uq_places_path"
        ),
    )
    op.create_index("idx_places_sort_order", "places", ["sort_order"])

    op.create_table(
        "photos",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("place_id", sa.Integer(), nullable=False),
        sa.Column("photo_num", sa.Integer(), nullable=False, comment="1-based position"),
        sa.Column("slug", sa.String(12), nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column(
            "is_favorite", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column(
            "thumbnail_status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
            comment="pending, processing, completed, failed",
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["place_id"], ["places.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("place_id", "photo_num", name="uq_photos_place_num"),
        sa.UniqueConstraint("place_id", "slug", name="uq_photos_place_slug"),
    )
    op.create_index("ix_photos_place_id", "photos", ["place_id"])

    op.create_table(
        "admin_users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False, comment="Argon2id"),
        sa.Column("totp_secret", sa.String(64), nullable=True),
        sa.Column(
            "totp_enabled", sa.Boolean(), server_default=sa.text("false"), nullable=False
        ),
        sa.Column(
            "totp_last_step",
            sa.BigInteger(),
            nullable=True,
            comment="Time step of the last accepted TOTP code",
        ),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )


def downgrade() -> None:
    op.drop_table("admin_users")
    op.drop_index("ix_photos_place_id", table_name="photos")
    op.drop_table("photos")
    op.drop_index("idx_places_sort_order", table_name="places")
    op.drop_table("places")
