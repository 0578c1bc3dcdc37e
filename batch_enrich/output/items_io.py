"""Reading and writing work-item files.

Input is either a JSON array of items or an envelope object with an
``items`` (or ``messages``) array. Output is always an envelope.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from pydantic import TypeAdapter

from .. import __version__
from ..types.items import WorkItem
from .serialization import atomic_write_bytes, json_dumps, json_loads

logger = logging.getLogger(__name__)

_items_adapter = TypeAdapter(list[WorkItem])


def load_items(path: Path) -> list[WorkItem]:
    """Load work items from a JSON file.

    Raises:
        ValueError: If the file is not valid JSON or has no item list.
    """
    data: Any = json_loads(Path(path).read_bytes())
    if isinstance(data, dict):
        data = data.get("items", data.get("messages"))
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of items or an object with 'items'")

    items = _items_adapter.validate_python(data)
    logger.info(f"Loaded {len(items)} items from {path}")
    return items


def write_items(path: Path, items: Sequence[WorkItem]) -> Path:
    """Write enriched items as an envelope, atomically."""
    envelope = {
        "schemaVersion": "1.0",
        "toolVersion": __version__,
        "createdAt": datetime.now(timezone.utc).isoformat(),
        "items": [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in items],
    }
    path = Path(path)
    atomic_write_bytes(path, json_dumps(envelope))
    logger.info(f"Wrote {len(items)} items to {path}")
    return path
