"""Content hashing and duplicate suppression for chunks."""

import hashlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from semantic_index.store import RecordStore


def content_hash(text: str) -> str:
    """Return the sha256 hex digest of a chunk's exact text.

    Example:
        >>> content_hash("abc")[:12]
        'ba7816bf8f01'
    """
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class DuplicateFilter:
    """Tracks which chunk hashes already exist for one document.

    Combines the record store's view with hashes accepted earlier in the
    same run, so repeated spans within one document are also suppressed.
    """

    def __init__(self, store: "RecordStore", document_id: int):
        self.store = store
        self.document_id = document_id
        self._seen: set[str] = set()
        self.duplicates = 0

    def is_duplicate(self, digest: str) -> bool:
        if digest in self._seen or self.store.find_chunk_by_hash(digest, self.document_id):
            self.duplicates += 1
            return True
        return False

    def mark(self, digest: str) -> None:
        self._seen.add(digest)
