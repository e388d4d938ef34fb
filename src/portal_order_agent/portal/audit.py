from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from playwright.sync_api import Page

from ..models import AuditEntry, AuditRecord, utcnow
from ..state import StateStore
from ..util.debug_bundle import create_audit_bundle


logger = logging.getLogger(__name__)

_SAFE_RE = re.compile(r"[^a-zA-Z0-9_-]+")


def _safe(value: str, *, limit: int = 60) -> str:
    return _SAFE_RE.sub("_", value).strip("_")[:limit] or "x"


class AuditRecorder:
    """
    Full-page screenshot after every stage, as compliance evidence of what was submitted.

    Files live under `<root>/<order_id>/<seq>_<stage>_<UTC timestamp>.png`; the returned reference
    is that path relative to `root`. A failed screenshot is logged and recorded with no reference.
    """

    def __init__(
        self,
        root_dir: str,
        state: Optional[StateStore] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.root = Path(root_dir)
        self._state = state
        self._clock = clock
        self._records: dict[str, AuditRecord] = {}

    def record_for(self, order_id: str) -> AuditRecord:
        record = self._records.get(order_id)
        if record is None:
            record = AuditRecord(order_id)
            if self._state is not None:
                for entry in self._state.audit_entries(order_id):
                    record.append(entry)
            self._records[order_id] = record
        return record

    def release(self, order_id: str) -> None:
        """Drop the in-memory record of a finished order; the state DB keeps the entries."""
        self._records.pop(order_id, None)

    def last_reference(self, order_id: str) -> Optional[str]:
        return self.record_for(order_id).last_reference()

    def capture(self, page: Page, order_id: str, stage: str) -> Optional[str]:
        record = self.record_for(order_id)
        now = self._clock()
        seq = len(record) + 1
        reference: Optional[str] = f"{_safe(order_id)}/{seq:02d}_{_safe(stage)}_{now.strftime('%Y%m%dT%H%M%SZ')}.png"

        try:
            out = self.root / reference
            out.parent.mkdir(parents=True, exist_ok=True)
            page.screenshot(path=str(out), full_page=True)
        except Exception as e:
            logger.warning("Audit screenshot failed (order=%s stage=%s): %s", order_id, stage, e)
            reference = None

        entry = AuditEntry(stage=stage, captured_at=now, reference=reference)
        record.append(entry)
        if self._state is not None:
            try:
                self._state.record_audit_entry(order_id, entry)
            except Exception:
                logger.warning("Failed to persist audit entry (order=%s stage=%s)", order_id, stage, exc_info=True)
        return reference

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete screenshots and index rows captured before `cutoff`. Returns rows removed."""
        if self._state is None:
            raise RuntimeError("purge_older_than needs a state store")

        old = self._state.audit_entries_before(cutoff)
        for entry in old:
            if not entry.reference:
                continue
            path = self.root / entry.reference
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Failed to delete audit screenshot %s", path, exc_info=True)
                continue
            # Drop the per-order directory once it is empty.
            try:
                if path.parent != self.root and not any(path.parent.iterdir()):
                    path.parent.rmdir()
            except OSError:
                pass

        removed = self._state.delete_audit_entries(e.id for e in old)
        if removed:
            logger.info("Purged %d audit entries captured before %s", removed, cutoff.isoformat())
        return removed

    def export(self, order_id: str, *, out_dir: str, log_file: str = "") -> Path:
        entries = self._state.audit_entries(order_id) if self._state is not None else list(self.record_for(order_id).entries)
        return create_audit_bundle(
            order_id=order_id,
            audit_root=str(self.root),
            references=[e.reference for e in entries if e.reference],
            log_file=log_file,
            out_dir=out_dir,
        )
