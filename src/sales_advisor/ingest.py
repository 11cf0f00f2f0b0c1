"""Reading JSON backups back into the sales advisor."""
from __future__ import annotations

import logging

from pydantic import ValidationError

from .export import BOM
from .schemas import ExportData
from .state import AppState

logger = logging.getLogger(__name__)


def load_backup_text(text: str) -> ExportData:
    """Parse a JSON backup; raises ``ValueError`` when it does not validate."""

    try:
        return ExportData.model_validate_json(text.lstrip(BOM))
    except ValidationError as exc:
        raise ValueError("Backup file is not a valid sales advisor export.") from exc


def restore(state: AppState, data: ExportData) -> None:
    """Replace the in-memory collections with the backup contents."""

    state.replace_all(data.projects, data.tasks, data.okrs)
    logger.info(
        "Restored backup from %s (projects=%s, tasks=%s, okrs=%s)",
        data.exported_at,
        len(data.projects),
        len(data.tasks),
        len(data.okrs),
    )
