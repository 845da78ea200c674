"""Two-way, per-record, last-writer-wins merge of local and remote datasets.

This is not a three-way merge: there is no common ancestor and no deletion
tombstones. A record deleted on one side but still present on the other is
indistinguishable from a record that was never synced there, so the merge
brings it back.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from notekeeper.exceptions import ErrorCode, ValidationError
from notekeeper.models.schema import (
    SYNC_ORDER,
    Dataset,
    EntityKind,
    EntityModel,
    EntityRecord,
    NoteTag,
    Pending,
    coerce_records,
)

logger = logging.getLogger(__name__)


@dataclass
class KindMergeStats:
    """What happened to the records of one kind during a merge."""
    kept_local: int = 0
    took_remote: int = 0
    remote_only: int = 0
    pending: int = 0
    dropped_links: int = 0


@dataclass
class MergeReport:
    """Per-kind merge statistics for one reconciliation pass."""
    kinds: Dict[str, KindMergeStats] = field(default_factory=dict)

    def for_kind(self, kind: EntityKind) -> KindMergeStats:
        return self.kinds.setdefault(kind.value, KindMergeStats())

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        return {kind: asdict(stats) for kind, stats in self.kinds.items()}


def _ensure_models(
    records: Iterable[Any], kind: Optional[Union[str, EntityKind]]
) -> List[EntityRecord]:
    if kind is not None:
        return coerce_records(kind, records)
    records = list(records)
    for record in records:
        if not isinstance(record, EntityModel):
            raise ValidationError(
                "Raw records need an entity kind to be merged",
                field="kind",
                code=ErrorCode.INVALID_ENTITY_KIND,
            )
    return records


def _pick(local: EntityRecord, remote: EntityRecord, stats: KindMergeStats) -> EntityRecord:
    """Choose between two copies of the same record.

    Kinds with an update timestamp keep the strictly newer copy; ties and
    kinds without one keep the local copy.
    """
    local_updated = getattr(local, "updated_at", None)
    remote_updated = getattr(remote, "updated_at", None)
    if local_updated is not None and remote_updated is not None:
        if remote_updated > local_updated:
            stats.took_remote += 1
            return remote
    stats.kept_local += 1
    return local


def reconcile(
    local: Iterable[Any],
    remote: Iterable[Any],
    kind: Optional[Union[str, EntityKind]] = None,
    stats: Optional[KindMergeStats] = None,
) -> List[EntityRecord]:
    """Merge two lists of records of the same kind.

    1. Remote records are indexed by identifier; only positive identifiers
       are merge keys.
    2. A local record with a remote twin is resolved by :func:`_pick`; one
       without is kept as a local-only addition.
    3. Local records with placeholder identifiers are kept as-is.
    4. Remote records whose identifier does not appear locally are appended.

    Local entries come first in their original order, followed by the
    remote-only additions in remote order. Each identifier appears once.

    Args:
        local: Local records (models, or raw dicts when ``kind`` is given).
        remote: Remote records of the same kind.
        kind: Entity kind; required when passing raw dicts.
        stats: Optional accumulator for merge statistics.

    Returns:
        The merged list.
    """
    stats = stats if stats is not None else KindMergeStats()
    local = _ensure_models(local, kind)
    remote = _ensure_models(remote, kind)

    remote_by_id: Dict[int, EntityRecord] = {}
    for record in remote:
        if not isinstance(record.identity, Pending):
            remote_by_id.setdefault(record.id, record)

    merged: List[EntityRecord] = []
    local_ids: Set[Optional[int]] = set()
    for record in local:
        if isinstance(record.identity, Pending):
            stats.pending += 1
            merged.append(record)
            continue
        if record.id in local_ids:
            continue
        local_ids.add(record.id)
        twin = remote_by_id.get(record.id)
        if twin is None:
            stats.kept_local += 1
            merged.append(record)
        else:
            merged.append(_pick(record, twin, stats))

    for record_id, record in remote_by_id.items():
        if record_id not in local_ids:
            stats.remote_only += 1
            merged.append(record)

    return merged


def drop_dangling_links(
    links: List[NoteTag], note_ids: Set[int], tag_ids: Set[int]
) -> List[NoteTag]:
    """Keep links whose note and tag both exist, one link per (note, tag) pair.

    When both sides linked the same pair under different identifiers the
    first occurrence (local first) survives.
    """
    kept: List[NoteTag] = []
    pairs = set()
    for link in links:
        if link.note_id not in note_ids or link.tag_id not in tag_ids:
            logger.debug(
                f"Dropping dangling link {link.id} (note {link.note_id}, tag {link.tag_id})"
            )
            continue
        if link.pair in pairs:
            logger.debug(f"Dropping duplicate link {link.id} for pair {link.pair}")
            continue
        pairs.add(link.pair)
        kept.append(link)
    return kept


def reconcile_dataset(
    local: Dataset, remote: Dataset, report: Optional[MergeReport] = None
) -> Dataset:
    """Merge every entity kind, then remove links the merge left dangling.

    Args:
        local: The local dataset.
        remote: The remote dataset.
        report: Optional report filled with per-kind statistics.

    Returns:
        The merged dataset.
    """
    report = report if report is not None else MergeReport()
    merged = Dataset()
    for kind in SYNC_ORDER:
        merged.set(
            kind,
            reconcile(local.get(kind), remote.get(kind), kind, report.for_kind(kind)),
        )

    links = merged.note_tags
    merged.note_tags = drop_dangling_links(
        links, merged.ids(EntityKind.NOTES), merged.ids(EntityKind.TAGS)
    )
    report.for_kind(EntityKind.NOTE_TAGS).dropped_links = len(links) - len(merged.note_tags)
    return merged
