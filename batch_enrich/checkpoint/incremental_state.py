"""Incremental state: which items earlier runs already enriched.

Unlike checkpoints, the state file outlives a single batch. It lets a later
run over a grown dataset enrich only the items it has not seen, and it is
advisory: a missing, corrupt or unrecognized file simply means "nothing is
known yet" and every item is enriched.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional, Sequence

from pydantic import ValidationError

from ..output.serialization import atomic_write_bytes, json_dumps, json_loads
from ..types.errors import CheckpointWriteError
from ..types.incremental import INCREMENTAL_STATE_VERSION, IncrementalState, RunStats
from ..types.records import utc_now

logger = logging.getLogger(__name__)

STALE_AFTER_DAYS = 7


def create_incremental_state(
    guids: Sequence[str] = (),
    config_hash: str = "",
    stats: Optional[RunStats] = None,
) -> IncrementalState:
    unique = list(dict.fromkeys(guids))
    return IncrementalState(
        total_items=len(unique),
        enriched_guids=unique,
        config_hash=config_hash,
        enrichment_stats=stats,
    )


def load_incremental_state(path: Path) -> Optional[IncrementalState]:
    """Load the state file, or None if there is no usable state."""
    path = Path(path)
    if not path.exists():
        return None

    try:
        data = json_loads(path.read_bytes())
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable incremental state {path}: {e}")
        return None

    if not isinstance(data, dict) or data.get("version") != INCREMENTAL_STATE_VERSION:
        version = data.get("version") if isinstance(data, dict) else None
        logger.warning(f"Ignoring incremental state {path} with unknown version {version!r}")
        return None

    try:
        return IncrementalState.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid incremental state {path}: {e}")
        return None


def save_incremental_state(state: IncrementalState, path: Path) -> None:
    """Atomically persist the state file.

    Raises:
        CheckpointWriteError: If the file could not be written.
    """
    data = json_dumps(state.model_dump(mode="json", by_alias=True))
    try:
        atomic_write_bytes(Path(path), data)
    except OSError as e:
        raise CheckpointWriteError(f"Failed to write incremental state {path}: {e}") from e
    logger.debug(f"Saved incremental state {path} ({state.total_items} GUIDs)")


def detect_new_items(guids: Iterable[str], state: Optional[IncrementalState]) -> list[str]:
    """GUIDs not yet enriched, in their original order."""
    if state is None:
        return list(guids)
    known = set(state.enriched_guids)
    return [guid for guid in guids if guid not in known]


def update_state_with_enriched_guids(
    state: IncrementalState,
    guids: Iterable[str],
    stats: Optional[RunStats] = None,
) -> IncrementalState:
    """Return a copy of ``state`` with ``guids`` appended (no duplicates)."""
    merged = list(dict.fromkeys([*state.enriched_guids, *guids]))
    return state.model_copy(
        update={
            "enriched_guids": merged,
            "total_items": len(merged),
            "last_enriched_at": utc_now(),
            "enrichment_stats": stats,
        }
    )


def is_state_outdated(
    state: IncrementalState,
    days: int = STALE_AFTER_DAYS,
    now: Optional[datetime] = None,
) -> bool:
    now = now or utc_now()
    return now - state.last_enriched_at > timedelta(days=days)


def reset_incremental_state(path: Path) -> bool:
    """Delete the state file; returns whether one existed."""
    path = Path(path)
    if not path.exists():
        return False
    path.unlink()
    logger.info(f"Deleted incremental state {path}")
    return True
