"""Add retry_after to dirty_markers so failing shops rotate out of batches.

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-26

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("dirty_markers") as batch_op:
        batch_op.add_column(sa.Column("retry_after", sa.DateTime(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("dirty_markers") as batch_op:
        batch_op.drop_column("retry_after")
