"""001_initial_schema

Revision ID: 001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

Initial database schema - creates all tables from scratch:
- users (Firebase-backed profiles and aggregate stats)
- matches and match_players (match aggregate with optimistic version column)
- payments (settlement attempts, refunds, timeline)
- payment_webhook_events (processed gateway event ids)
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from scratch."""
    # Import models to register them with Base.metadata
    from playsplit.database.db import Base
    from playsplit.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, checkfirst=True)


def downgrade() -> None:
    """Drop all tables."""
    from playsplit.database.db import Base
    from playsplit.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind, checkfirst=True)
