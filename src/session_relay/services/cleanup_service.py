"""Cleanup utilities for stale recordings and run buffers."""

from __future__ import annotations

import logging
import shutil
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from session_relay.clients.database import AgentRun as AgentRunORM, session_scope
from session_relay.models.enums import RunStatus
from session_relay.services.recording_service import RecordingService
from session_relay.services.session_service import SessionRegistry

LOG = logging.getLogger(__name__)


class CleanupService:
    """Removes stale resources."""

    def __init__(
        self,
        recordings: RecordingService,
        registry: SessionRegistry,
        buffer_dir: Path,
        recording_retention_hours: int = 24,
        run_retention_days: int = 7,
    ) -> None:
        self.recordings = recordings
        self.registry = registry
        self.buffer_dir = Path(buffer_dir)
        self.recording_retention = timedelta(hours=recording_retention_hours)
        self.run_retention = timedelta(days=run_retention_days)

    def purge_stale_recordings(self) -> int:
        """Delete recordings of dead sessions not written to within the retention window."""
        base = self.recordings.base_dir
        if not base.exists():
            return 0
        cutoff = time.time() - self.recording_retention.total_seconds()
        removed = 0
        for entry in base.iterdir():
            if not entry.is_dir() or entry.name in self.registry:
                continue
            try:
                mtime = max((child.stat().st_mtime for child in entry.iterdir()), default=entry.stat().st_mtime)
            except FileNotFoundError:
                continue
            if mtime <= cutoff:
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        if removed:
            LOG.info("Removed %d stale recordings", removed)
        return removed

    def purge_expired_runs(self) -> int:
        """Drop finished run records and their NDJSON buffers."""
        cutoff = datetime.now(timezone.utc) - self.run_retention
        with session_scope() as db:
            rows = (
                db.query(AgentRunORM)
                .filter(
                    AgentRunORM.status != RunStatus.RUNNING,
                    AgentRunORM.created_at <= cutoff,
                )
                .all()
            )
            run_ids = [row.id for row in rows]
            for row in rows:
                db.delete(row)
        for run_id in run_ids:
            (self.buffer_dir / f"{run_id}.ndjson").unlink(missing_ok=True)
        if run_ids:
            LOG.info("Removed %d expired runs", len(run_ids))
        return len(run_ids)
