"""Streams records changed since a watermark, bounded per table."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from ..conf import sync_setting
from ..models import TrackedRecord
from ..scope import SyncScope
from ..tables import TABLE_NAMES

logger = logging.getLogger(__name__)


@dataclass
class PullResult:
    tables: Dict[str, List[TrackedRecord]] = field(default_factory=dict)
    synced_at: Optional[datetime] = None
    has_more: bool = False


def resolve_limits(requested: Optional[Mapping[str, int]] = None, default: Optional[int] = None) -> Dict[str, int]:
    """Per-table caps, defaulted and clamped to the configured maximum."""
    max_limit = sync_setting("PULL_MAX_LIMIT")
    base = default or sync_setting("PULL_DEFAULT_LIMIT")
    limits = {}
    for name in TABLE_NAMES:
        value = (requested or {}).get(name) or base
        limits[name] = max(1, min(int(value), max_limit))
    return limits


class PullStreamer:
    def __init__(self, scope: SyncScope):
        self.scope = scope

    def _changed(self, table: str, since: Optional[datetime]):
        records = TrackedRecord.objects.filter(store_id=self.scope.store_id, table=table)
        if since is not None:
            records = records.filter(updated_at__gt=since)
        return records

    def _slice(self, table: str, since: Optional[datetime], limit: int):
        """Oldest `limit` records, plus any that tie with the last one on updated_at."""
        rows = list(self._changed(table, since).order_by("updated_at", "id")[: limit + 1])
        if len(rows) <= limit:
            return rows, False
        rows = rows[:limit]
        boundary = rows[-1].updated_at
        seen = {row.pk for row in rows}
        ties = self._changed(table, since).filter(updated_at=boundary).order_by("id")
        rows.extend(row for row in ties if row.pk not in seen)
        return rows, True

    def pull(self, since: Optional[datetime] = None, limits: Optional[Mapping[str, int]] = None) -> PullResult:
        limits = resolve_limits(limits)
        result = PullResult()
        cut_points = []

        for name in TABLE_NAMES:
            rows, truncated = self._slice(name, since, limits[name])
            result.tables[name] = rows
            if truncated:
                cut_points.append(rows[-1].updated_at)

        if cut_points:
            result.synced_at = min(cut_points)
            result.has_more = True
        else:
            # Only rows this response carries may move the watermark; a record
            # committed after its table was read stays newer than it.
            returned = [row.updated_at for rows in result.tables.values() for row in rows]
            result.synced_at = max(returned) if returned else since

        logger.info(
            "pull store=%s since=%s records=%s synced_at=%s more=%s",
            self.scope.store_id,
            since.isoformat() if since else None,
            sum(len(rows) for rows in result.tables.values()),
            result.synced_at.isoformat() if result.synced_at else None,
            result.has_more,
        )
        return result
