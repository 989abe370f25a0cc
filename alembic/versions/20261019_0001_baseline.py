"""Baseline empty schema.

Revision ID: 5b1f0c2a7d10
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from __future__ import annotations

# revision identifiers, used by Alembic.
revision = "5b1f0c2a7d10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    pass


def downgrade() -> None:
    pass
