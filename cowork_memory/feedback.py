"""
Feedback processor: user actions on query results.

Every event is appended to the feedback log. ``pin``, ``unpin`` and ``hide``
also change the atom they target when it belongs to the processor's project;
the other kinds are recorded only.
"""

import logging
import uuid
from dataclasses import replace
from typing import Callable, Optional

from .codec import now_ms
from .entities import FEEDBACK_TYPES, MemoryFeedback
from .repositories import AtomRepository, QueryLogRepository

logger = logging.getLogger(__name__)


class FeedbackProcessor:

    def __init__(
        self,
        atoms: AtomRepository,
        query_log: QueryLogRepository,
        project_id: str,
        now: Optional[Callable[[], int]] = None,
    ):
        self.atoms = atoms
        self.query_log = query_log
        self.project_id = project_id
        self.now = now or now_ms

    async def apply(
        self,
        session_id: Optional[str],
        query_id: str,
        atom_id: str,
        feedback: str,
        note: Optional[str] = None,
    ) -> MemoryFeedback:
        """
        Record a feedback event and apply its side effect.

        Raises:
            ValueError: ``feedback`` is not a known kind
        """
        if feedback not in FEEDBACK_TYPES:
            raise ValueError(
                f"Unknown feedback '{feedback}'. Expected one of: {', '.join(sorted(FEEDBACK_TYPES))}"
            )

        now = self.now()
        event = MemoryFeedback(
            id=str(uuid.uuid4()),
            session_id=session_id,
            query_id=query_id,
            atom_id=atom_id,
            feedback=feedback,
            note=note,
            created_at=now,
        )
        await self.query_log.add_feedback(event)

        if feedback not in ("pin", "unpin", "hide"):
            return event

        atom = await self.atoms.find_by_id(atom_id)
        if atom is None or atom.project_id != self.project_id:
            logger.info(f"Feedback '{feedback}' for unknown atom {atom_id}; logged only")
            return event

        if feedback == "pin":
            atom = replace(atom, pinned=True, updated_at=now)
        elif feedback == "unpin":
            atom = replace(atom, pinned=False, updated_at=now)
        else:
            atom = replace(atom, sensitivity="restricted", updated_at=now)

        await self.atoms.upsert(atom)
        logger.info(f"Applied '{feedback}' to atom {atom_id}")
        return event
