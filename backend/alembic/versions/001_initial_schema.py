"""Initial schema - documents (stores, categories, products, subscriptions).

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("collection", sa.String(100), primary_key=True),
        sa.Column("id", sa.String(300), primary_key=True),
        sa.Column("data", JSONB(), nullable=False, server_default="{}"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_documents_collection", "documents", ["collection"])
    # Products are looked up by store on every sync.
    op.execute(
        "CREATE INDEX ix_documents_store_id ON documents ((data ->> 'store_id')) "
        "WHERE collection IN ('products', 'categories')"
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_documents_store_id")
    op.drop_index("ix_documents_collection", table_name="documents")
    op.drop_table("documents")
