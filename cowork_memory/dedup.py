"""
Create-time duplicate detection.

A new memory is a duplicate of an existing one when either

1. the stored content hash of any atom in the project matches the hash of
   the incoming content (wording noise such as case and punctuation is
   normalized away), or
2. an atom in the same group has content similarity >= the threshold.

Duplicates are merged into the existing memory instead of inserted.
"""

import logging
from typing import List, Optional

from .codec import atom_to_memory, stored_content_hash
from .entities import CreateMemoryInput, Memory, MemoryAtom, UpdateMemoryInput
from .similarity import content_hash, jaccard, normalize, tokenize

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.9
CONTAINMENT_SIMILARITY = 0.95


def content_similarity(a: str, b: str) -> float:
    """1.0 for equal normalized text, 0.95 when one contains the other, else Jaccard."""
    norm_a = normalize(a)
    norm_b = normalize(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    if norm_a in norm_b or norm_b in norm_a:
        return CONTAINMENT_SIMILARITY
    return jaccard(tokenize(norm_a), tokenize(norm_b))


class DedupGate:
    """Finds the memory a create call should merge into, and plans the merge."""

    def __init__(self, similarity_threshold: float = DEFAULT_THRESHOLD):
        self.similarity_threshold = similarity_threshold

    def find_duplicate(self, atoms: List[MemoryAtom], content: str, group: str) -> Optional[Memory]:
        """
        Args:
            atoms: Every atom of the project
            content: Incoming content
            group: Incoming group; the similarity scan is limited to it

        Returns:
            The existing Memory to merge into, or None
        """
        target_hash = content_hash(content)
        for atom in atoms:
            if stored_content_hash(atom) == target_hash:
                logger.debug(f"Exact duplicate of {atom.id}")
                return atom_to_memory(atom)

        for atom in atoms:
            memory = atom_to_memory(atom)
            if memory.group != group:
                continue
            if content_similarity(memory.content, content) >= self.similarity_threshold:
                logger.debug(f"Near duplicate of {atom.id}")
                return memory

        return None

    @staticmethod
    def plan_merge(existing: Memory, incoming: CreateMemoryInput) -> UpdateMemoryInput:
        """
        Update that folds ``incoming`` into ``existing``.

        Tags are unioned. The incoming content replaces the existing one only
        when it normalizes differently and is strictly longer. A manual create
        adopts its title over an auto-derived one.
        """
        tags = list(dict.fromkeys([*(existing.tags or []), *(incoming.tags or [])]))

        incoming_normalized = normalize(incoming.content)
        use_incoming = (
            bool(incoming_normalized)
            and incoming_normalized != normalize(existing.content)
            and len(incoming.content.strip()) > len(existing.content.strip())
        )

        updates = UpdateMemoryInput(
            content=incoming.content if use_incoming else existing.content,
            tags=tags,
            group=existing.group,
        )
        if existing.source == "auto" and incoming.source == "manual" and (incoming.title or "").strip():
            updates.title = incoming.title.strip()
        return updates
