"""Session-scoped registry of open workflows and suggestion reviews."""
from __future__ import annotations

import logging
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

_MAX_ENTRIES_PER_SESSION = 20
_MAX_SESSIONS = 500

_Key = Tuple[str, str]
# Least recently used sessions first.
_store: "OrderedDict[str, OrderedDict[_Key, Any]]" = OrderedDict()
_lock = Lock()


def _key(kind: str, entity_id: Optional[str]) -> _Key:
    return kind, entity_id or ""


def open_entry(session_id: str, kind: str, entity_id: Optional[str], factory: Callable[[], Any]) -> Any:
    """Create a fresh entry, replacing any previous one for the same entity.

    Re-opening never resumes old state: the factory always runs.
    """

    if not session_id:
        raise ValueError("Session ID is required to open a workflow.")

    entry = factory()
    with _lock:
        entries = _store.setdefault(session_id, OrderedDict())
        entries.pop(_key(kind, entity_id), None)
        entries[_key(kind, entity_id)] = entry
        while len(entries) > _MAX_ENTRIES_PER_SESSION:
            dropped, _ = entries.popitem(last=False)
            logger.info("Session %s at capacity; dropped %s entry for %s", session_id, *dropped)
        _store.move_to_end(session_id)
        while len(_store) > _MAX_SESSIONS:
            idle, _ = _store.popitem(last=False)
            logger.info("Session store at capacity; dropped idle session %s", idle)

    logger.info("Opened %s for session %s (entity=%s)", kind, session_id, entity_id)
    return entry


def get_entry(session_id: str, kind: str, entity_id: Optional[str]) -> Optional[Any]:
    if not session_id:
        return None

    with _lock:
        entries = _store.get(session_id)
        if entries is None:
            return None
        _store.move_to_end(session_id)
        return entries.get(_key(kind, entity_id))


def close_entry(session_id: str, kind: str, entity_id: Optional[str]) -> None:
    """Discard an entry; a result still in flight for it is simply dropped."""

    if not session_id:
        return

    with _lock:
        entries = _store.get(session_id, {})
        existed = entries.pop(_key(kind, entity_id), None) is not None
        if not entries:
            _store.pop(session_id, None)

    if existed:
        logger.info("Closed %s for session %s (entity=%s)", kind, session_id, entity_id)


def reset() -> None:
    with _lock:
        count = len(_store)
        _store.clear()
    logger.info("Session store reset. Removed %s sessions", count)
