"""
Deduplicator for mention candidates.

Removes true duplicates only: two candidates are the same real-world
event when (patient id, lower-cased segment, date of service, position)
match. Repeats of a phrase at different offsets are kept.
"""
from typing import Iterable, List, Set, Tuple

from notescan.types.models import IdentityKey, Mention
from notescan.utils import get_logger

logger = get_logger("Deduplicator")


def identity_key(mention: Mention) -> IdentityKey:
    """The single identity key used for all duplicate detection."""
    return mention.identity_key


class Deduplicator:
    """
    Global exact-key deduplication across all workers' candidates.

    First occurrence wins, so the output keeps input order.
    """

    def __init__(self):
        self._seen_keys: Set[IdentityKey] = set()

    def dedupe(self, candidates: Iterable[Mention]) -> Tuple[List[Mention], int]:
        """
        Drop candidates whose identity key was already seen.

        Args:
            candidates: Merged candidates from every worker

        Returns:
            Tuple of (unique mentions, removed count)
        """
        self._seen_keys = set()
        unique: List[Mention] = []
        removed = 0

        for mention in candidates:
            key = identity_key(mention)
            if key in self._seen_keys:
                removed += 1
                continue
            self._seen_keys.add(key)
            unique.append(mention)

        if removed > 0:
            logger.info(f"Deduplicated: removed {removed} duplicate mentions ({len(unique)} remaining)")
        return unique, removed
