"""create_stored_preference_table

Revision ID: 3f9c2a7d1e84
Revises:
Create Date: 2026-10-19 10:12:41.318207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1e84'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'stored_preference',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('value', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_stored_preference_id'), 'stored_preference', ['id'], unique=False)
    op.create_index(op.f('ix_stored_preference_key'), 'stored_preference', ['key'], unique=True)


def downgrade() -> None:
    op.drop_index(op.f('ix_stored_preference_key'), table_name='stored_preference')
    op.drop_index(op.f('ix_stored_preference_id'), table_name='stored_preference')
    op.drop_table('stored_preference')
