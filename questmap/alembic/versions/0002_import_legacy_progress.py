"""import legacy adventure progress

Revision ID: 0002_import_legacy_progress
Revises: 0001_initial
Create Date: 2026-09-02 00:00:00.000000

Copies world progress out of the two older progress tables, when present:
- quest_adv_progress
- adventure_player_progress

Rows already present in adventure_progress win, and so does the first legacy
row seen for a (user, world). The legacy tables are left untouched; drop
them by hand once the import is verified.

"""
from datetime import datetime, timezone
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0002_import_legacy_progress'
down_revision: Union[str, None] = '0001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LEGACY_TABLES = ('quest_adv_progress', 'adventure_player_progress')
WORLD_STATUSES = ('locked', 'unlocked', 'in_progress', 'completed')

progress_table = sa.table(
    'adventure_progress',
    sa.column('user_id', sa.String()),
    sa.column('world_number', sa.Integer()),
    sa.column('world_status', sa.String()),
    sa.column('current_position', sa.String()),
    sa.column('levels_completed', sa.Integer()),
    sa.column('total_levels', sa.Integer()),
    sa.column('total_xp_earned', sa.Integer()),
    sa.column('mini_boss_defeated', sa.Boolean()),
    sa.column('boss_defeated', sa.Boolean()),
    sa.column('started_at', sa.DateTime(timezone=True)),
    sa.column('completed_at', sa.DateTime(timezone=True)),
    sa.column('created_at', sa.DateTime(timezone=True)),
    sa.column('updated_at', sa.DateTime(timezone=True)),
)


def _as_datetime(value):
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _legacy_row(row, now):
    # Older tables call the column status; anything non-canonical is unlocked
    status = row.get('world_status', row.get('status'))
    if status not in WORLD_STATUSES:
        status = 'unlocked'
    return {
        'user_id': str(row['user_id']),
        'world_number': int(row['world_number']),
        'world_status': status,
        'current_position': row.get('current_position') or 'level_1',
        'levels_completed': int(row.get('levels_completed') or 0),
        'total_levels': int(row.get('total_levels') or 0),
        'total_xp_earned': int(row.get('total_xp_earned') or 0),
        'mini_boss_defeated': bool(row.get('mini_boss_defeated')),
        'boss_defeated': bool(row.get('boss_defeated')),
        'started_at': _as_datetime(row.get('started_at')),
        'completed_at': _as_datetime(row.get('completed_at')),
        'created_at': _as_datetime(row.get('created_at')) or now,
        'updated_at': _as_datetime(row.get('updated_at')) or now,
    }


def upgrade() -> None:
    bind = op.get_bind()
    existing = set(sa.inspect(bind).get_table_names())
    seen = {
        (user_id, world_number)
        for user_id, world_number in bind.execute(
            sa.select(progress_table.c.user_id, progress_table.c.world_number)
        )
    }
    now = datetime.now(timezone.utc)
    for table in LEGACY_TABLES:
        if table not in existing:
            continue
        rows = []
        for legacy in bind.execute(sa.text(f'SELECT * FROM {table}')).mappings():
            row = _legacy_row(legacy, now)
            key = (row['user_id'], row['world_number'])
            if key in seen:
                continue
            seen.add(key)
            rows.append(row)
        if rows:
            op.bulk_insert(progress_table, rows)


def downgrade() -> None:
    # Imported rows cannot be told apart from native ones; nothing to undo
    pass
