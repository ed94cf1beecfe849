"""Merging of locally cached and remotely persisted reading state.

Progress merges per book: the snapshot with the later `updated_at` wins and
books present on one side only are kept. Bookmarks merge under an explicit
policy (see BookmarkPolicy). Equal timestamps always resolve to the local side.

Bookmark ids are assumed unique within one list. Under UPSERT a repeated id
collapses to its newest record; StateStore dedupes stored lists on load so a
merge of a state with itself is a no-op.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Mapping

from thinkread.models import BookmarkRecord, ProgressSnapshot, StateSnapshot


class BookmarkPolicy(str, Enum):
    # Union by id, newer updated_at wins per id.
    UPSERT = "upsert"
    # Side with the newest bookmark wins wholesale.
    REPLACE = "replace"


def merge_progress(
    local: Mapping[str, ProgressSnapshot],
    remote: Mapping[str, ProgressSnapshot],
) -> Dict[str, ProgressSnapshot]:
    merged: Dict[str, ProgressSnapshot] = dict(local)
    for book_id, theirs in remote.items():
        ours = merged.get(book_id)
        if ours is None or theirs.updated_at > ours.updated_at:
            merged[book_id] = theirs
    return merged


def _upsert_by_id(
    merged: Dict[str, BookmarkRecord],
    records: Iterable[BookmarkRecord],
) -> None:
    for record in records:
        current = merged.get(record.id)
        if current is not None and current.updated_at >= record.updated_at:
            continue
        merged[record.id] = record


def _newest(records: List[BookmarkRecord]) -> int:
    return max((r.updated_at for r in records), default=-1)


def merge_bookmarks(
    local: List[BookmarkRecord],
    remote: List[BookmarkRecord],
    policy: BookmarkPolicy = BookmarkPolicy.UPSERT,
) -> List[BookmarkRecord]:
    policy = BookmarkPolicy(policy)
    if policy is BookmarkPolicy.REPLACE:
        return list(local) if _newest(local) >= _newest(remote) else list(remote)

    merged: Dict[str, BookmarkRecord] = {}
    _upsert_by_id(merged, local)
    _upsert_by_id(merged, remote)
    return list(merged.values())


def reconcile(
    local: StateSnapshot,
    remote: StateSnapshot,
    policy: BookmarkPolicy = BookmarkPolicy.UPSERT,
) -> StateSnapshot:
    """Merge two snapshots without losing the most recent edit on either side."""
    return StateSnapshot(
        progress=merge_progress(local.progress, remote.progress),
        bookmarks=merge_bookmarks(local.bookmarks, remote.bookmarks, policy),
    )
