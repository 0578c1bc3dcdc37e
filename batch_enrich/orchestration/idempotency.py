"""Idempotent merging of enrichment records.

Guarantees at most one record per kind, so re-running an item after a crash
between enrichment and checkpoint is harmless.

Among records sharing a kind, a successful record always beats an error
record; otherwise the latest ``created_at`` wins. A failed re-run therefore
never displaces an earlier good result.
"""

import logging
from typing import Iterable, Mapping, Optional, Sequence

from ..types.items import WorkItem
from ..types.records import EnrichmentRecord

logger = logging.getLogger(__name__)


def _rank(record: EnrichmentRecord) -> tuple[bool, float]:
    return (not record.is_error, record.created_at.timestamp())


def should_skip(records: Optional[Sequence[EnrichmentRecord]], kind: str) -> bool:
    """True iff a record of ``kind`` already exists."""
    if not records:
        return False
    return any(record.kind == kind for record in records)


def dedupe(records: Iterable[EnrichmentRecord]) -> list[EnrichmentRecord]:
    """Reduce to one record per kind, keeping the best-ranked one.

    Order follows the first appearance of each kind.
    """
    by_kind: dict[str, EnrichmentRecord] = {}
    for record in records:
        existing = by_kind.get(record.kind)
        if existing is None or _rank(record) > _rank(existing):
            by_kind[record.kind] = record
    return list(by_kind.values())


def add_idempotent(
    records: Optional[Sequence[EnrichmentRecord]],
    new_record: EnrichmentRecord,
    force_refresh: bool = False,
) -> list[EnrichmentRecord]:
    """Merge ``new_record`` into ``records``.

    Appends when the kind is new, replaces in place when ``force_refresh`` is
    set, and otherwise keeps the existing record. The result is always
    deduplicated, so repeated calls with the same inputs are a fixed point.
    """
    current = list(records or [])
    existing_index = next(
        (i for i, record in enumerate(current) if record.kind == new_record.kind),
        None,
    )

    if existing_index is None:
        current.append(new_record)
    elif force_refresh:
        # The refreshed record takes the first slot; other records of the kind go
        current = [
            new_record if i == existing_index else record
            for i, record in enumerate(current)
            if record.kind != new_record.kind or i == existing_index
        ]
    else:
        logger.debug(f"Keeping existing {new_record.kind} record")

    return dedupe(current)


def add_enrichments_idempotent(
    items: Sequence[WorkItem],
    records_by_guid: Mapping[str, EnrichmentRecord],
    force_refresh: bool = False,
) -> list[WorkItem]:
    """Apply ``add_idempotent`` across items; items without a record pass through."""
    merged = []
    for item in items:
        record = records_by_guid.get(item.guid)
        if record is None:
            merged.append(item)
            continue
        merged.append(
            item.model_copy(
                update={"enrichment": add_idempotent(item.enrichment, record, force_refresh)}
            )
        )
    return merged


def has_all_enrichments(
    records: Optional[Sequence[EnrichmentRecord]], required_kinds: Iterable[str]
) -> bool:
    if not records:
        return False
    present = {record.kind for record in records}
    return all(kind in present for kind in required_kinds)


def get_enrichment_by_kind(
    records: Optional[Sequence[EnrichmentRecord]], kind: str
) -> Optional[EnrichmentRecord]:
    for record in records or []:
        if record.kind == kind:
            return record
    return None


def clear_enrichment_by_kind(
    records: Optional[Sequence[EnrichmentRecord]], kind: str
) -> list[EnrichmentRecord]:
    return [record for record in records or [] if record.kind != kind]
