"""
Project identity and per-project engine state.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .entities import DEFAULT_GROUPS
from .repositories import SettingsStore

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "memory.project_state:"


def project_id_for(working_dir: str) -> str:
    """Deterministic project id for a working directory."""
    resolved = str(Path(working_dir).resolve())
    return "proj_" + hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


@dataclass
class ProjectState:
    """Typed engine state for one project, persisted as a single JSON value."""
    project_id: str
    custom_groups: List[str] = field(default_factory=list)
    last_consolidation_run_ms: Optional[int] = None

    @property
    def key(self) -> str:
        return STATE_KEY_PREFIX + self.project_id

    def register_group(self, group: str) -> bool:
        """Add a custom group; returns True if the registry changed."""
        if group in DEFAULT_GROUPS or group in self.custom_groups:
            return False
        self.custom_groups = sorted(set(self.custom_groups) | {group})
        return True

    def unregister_group(self, group: str) -> bool:
        if group not in self.custom_groups:
            return False
        self.custom_groups = [g for g in self.custom_groups if g != group]
        return True

    @classmethod
    async def load(cls, store: SettingsStore, project_id: str) -> "ProjectState":
        raw = await store.get(STATE_KEY_PREFIX + project_id)
        if not raw:
            return cls(project_id=project_id)
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable state for project {project_id}")
            return cls(project_id=project_id)
        if not isinstance(data, dict):
            return cls(project_id=project_id)

        groups = data.get("custom_groups")
        last_run = data.get("last_consolidation_run_ms")
        return cls(
            project_id=project_id,
            custom_groups=sorted({
                g for g in (groups if isinstance(groups, list) else [])
                if isinstance(g, str) and g and g not in DEFAULT_GROUPS
            }),
            last_consolidation_run_ms=last_run if isinstance(last_run, int) else None,
        )

    async def save(self, store: SettingsStore) -> None:
        await store.set(self.key, json.dumps({
            "custom_groups": self.custom_groups,
            "last_consolidation_run_ms": self.last_consolidation_run_ms,
        }))
