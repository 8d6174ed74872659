"""create spotify token and cache tables

Revision ID: 001
Create Date: 2025-03-02 14:10:31.512044

"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None

TIME_RANGE = sa.Enum('short_term', 'medium_term', 'long_term', name='time_range')

def upgrade() -> None:
    op.create_table(
        'spotify_tokens',
        sa.Column('user_id', sa.String(64), primary_key=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.BigInteger(), nullable=False),
        sa.Column('last_updated', sa.DateTime(timezone=True)),
        sa.CheckConstraint('expires_at >= 0', name='chk_spotify_tokens_expires_at_positive'),
    )

    op.create_table(
        'spotify_data',
        sa.Column('time_range', TIME_RANGE, primary_key=True),
        sa.Column('artists', sa.JSON(), nullable=False),
        sa.Column('tracks', sa.JSON(), nullable=False),
        sa.Column('genres', sa.JSON(), nullable=False),
        sa.Column('fetched_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_spotify_data_fetched_at', 'spotify_data', ['fetched_at'])

def downgrade() -> None:
    op.drop_index('idx_spotify_data_fetched_at', table_name='spotify_data')
    op.drop_table('spotify_data')
    op.drop_table('spotify_tokens')
    TIME_RANGE.drop(op.get_bind(), checkfirst=True)
