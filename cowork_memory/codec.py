"""
Metadata codec and Atom <-> Memory mapping.

The atom store only knows the generic ``MemoryAtom`` schema. The engine keeps
its extra per-memory state (logical group, access counters, related ids,
content hash, exact ISO timestamps) in a versioned blob stored in
``provenance.source_ref``::

    cmem:v1:<urlsafe base64 of compact JSON>

Decoding never raises: anything that is not a well-formed v1 blob decodes to
an empty dict and the mapping falls back to defaults derived from the atom.
"""

import base64
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .entities import Memory, MemoryAtom, Provenance, clamp01
from .similarity import content_hash

logger = logging.getLogger(__name__)

METADATA_VERSION = 1
METADATA_PREFIX = f"cmem:v{METADATA_VERSION}:"

CREATED_BY = "memory_engine_v1"

GROUP_TO_ATOM_TYPE = {
    "instructions": "instructions",
    "preferences": "preference",
    "context": "context",
    "learnings": "semantic",
}

ATOM_TYPE_TO_GROUP = {
    "instructions": "instructions",
    "preference": "preferences",
    "context": "context",
    "semantic": "learnings",
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_STRING_FIELDS = ("group", "source", "last_accessed_at", "content_hash", "created_at", "updated_at")
_LIST_FIELDS = ("related_session_ids", "related_memory_ids")


# =============================================================================
# Time helpers - the store keeps epoch millis, Memory keeps ISO-8601 strings
# =============================================================================

def now_ms() -> int:
    return (datetime.now(timezone.utc) - _EPOCH) // timedelta(milliseconds=1)


def to_iso(ms: int) -> str:
    moment = _EPOCH + timedelta(milliseconds=int(ms))
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def from_iso(value: Optional[str]) -> Optional[int]:
    """Parse an ISO-8601 string to epoch millis; None if unparseable."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (parsed - _EPOCH) // timedelta(milliseconds=1)


# =============================================================================
# Blob encode / decode
# =============================================================================

def encode_metadata(metadata: Dict[str, Any]) -> str:
    """Encode engine metadata into an opaque, versioned string."""
    payload = {key: value for key, value in metadata.items() if value is not None}
    payload["v"] = METADATA_VERSION
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return METADATA_PREFIX + base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_metadata(blob: Optional[str]) -> Dict[str, Any]:
    """Decode a metadata blob. Malformed or foreign input yields ``{}``."""
    if not blob or not isinstance(blob, str) or not blob.startswith(METADATA_PREFIX):
        return {}

    try:
        raw = base64.urlsafe_b64decode(blob[len(METADATA_PREFIX):].encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
    except ValueError as e:
        logger.debug(f"Ignoring malformed memory metadata: {e}")
        return {}

    if not isinstance(data, dict):
        return {}

    metadata: Dict[str, Any] = {}
    for key in _STRING_FIELDS:
        if isinstance(data.get(key), str):
            metadata[key] = data[key]
    for key in _LIST_FIELDS:
        values = data.get(key)
        if isinstance(values, list):
            metadata[key] = [str(v) for v in values if isinstance(v, (str, int))]
    access_count = data.get("access_count")
    if isinstance(access_count, int) and not isinstance(access_count, bool):
        metadata["access_count"] = max(0, access_count)
    return metadata


# =============================================================================
# Group <-> atom type
# =============================================================================

def group_to_atom_type(group: str) -> str:
    return GROUP_TO_ATOM_TYPE.get(group, "semantic")


def atom_type_to_group(atom_type: str) -> str:
    return ATOM_TYPE_TO_GROUP.get(atom_type, "learnings")


def derive_title(content: str, fallback: str = "Memory") -> str:
    """First sentence of the content, capped at 64 characters."""
    compact = " ".join((content or "").split())
    for separator in (". ", "! ", "? "):
        if separator in compact:
            compact = compact.split(separator, 1)[0]
    if len(compact) > 64:
        compact = compact[:61].rstrip() + "..."
    if not compact:
        return fallback
    return compact[0].upper() + compact[1:]


# =============================================================================
# Atom <-> Memory
# =============================================================================

def _iso_for(ms: int, stored: Optional[str]) -> str:
    # The stored string wins only while it still describes the atom's timestamp
    if stored and from_iso(stored) == ms:
        return stored
    return to_iso(ms)


def stored_content_hash(atom: MemoryAtom) -> str:
    """The hash recorded at write time, or a fresh one for legacy atoms."""
    metadata = decode_metadata(atom.provenance.source_ref)
    return metadata.get("content_hash") or content_hash(atom.content)


def atom_to_memory(atom: MemoryAtom) -> Memory:
    """Rebuild the Memory view from an atom and its decoded metadata."""
    metadata = decode_metadata(atom.provenance.source_ref)

    group = metadata.get("group") or atom_type_to_group(atom.atom_type)
    source = metadata.get("source")
    if source not in ("auto", "manual"):
        source = "manual" if atom.provenance.source == "user" else "auto"

    created_at = _iso_for(atom.created_at, metadata.get("created_at"))
    updated_at = _iso_for(atom.updated_at, metadata.get("updated_at"))

    return Memory(
        id=atom.id,
        title=atom.summary or derive_title(atom.content),
        content=atom.content,
        group=group,
        tags=list(atom.keywords or []),
        source=source,
        confidence=atom.confidence,
        created_at=created_at,
        updated_at=updated_at,
        access_count=metadata.get("access_count", 0),
        last_accessed_at=metadata.get("last_accessed_at") or updated_at,
        related_session_ids=list(metadata.get("related_session_ids", [])),
        related_memory_ids=list(metadata.get("related_memory_ids", [])),
    )


def memory_to_atom(
    memory: Memory,
    project_id: str,
    existing: Optional[MemoryAtom] = None,
) -> MemoryAtom:
    """
    Flatten a Memory into the atom schema.

    Fields the Memory view does not carry (pinned, sensitivity, session/run ids,
    expiry, provenance tags) are taken from ``existing`` when given.
    """
    fallback_ms = now_ms()
    created_ms = from_iso(memory.created_at)
    updated_ms = from_iso(memory.updated_at)
    if created_ms is None:
        created_ms = existing.created_at if existing else fallback_ms
    if updated_ms is None:
        updated_ms = fallback_ms

    metadata = {
        "group": memory.group,
        "source": memory.source,
        "access_count": max(0, int(memory.access_count or 0)),
        "last_accessed_at": memory.last_accessed_at or None,
        "related_session_ids": list(memory.related_session_ids),
        "related_memory_ids": list(memory.related_memory_ids),
        "content_hash": content_hash(memory.content),
        "created_at": memory.created_at or None,
        "updated_at": memory.updated_at or None,
    }

    previous = existing.provenance if existing else Provenance()
    provenance = Provenance(
        source="user" if memory.source == "manual" else "assistant",
        source_ref=encode_metadata(metadata),
        tags=list(previous.tags),
        created_by=previous.created_by if existing else CREATED_BY,
    )

    return MemoryAtom(
        id=memory.id,
        project_id=project_id,
        atom_type=group_to_atom_type(memory.group),
        content=memory.content,
        confidence=clamp01(memory.confidence),
        created_at=created_ms,
        updated_at=updated_ms,
        session_id=existing.session_id if existing else None,
        run_id=existing.run_id if existing else None,
        summary=memory.title,
        keywords=list(memory.tags),
        provenance=provenance,
        sensitivity=existing.sensitivity if existing else "normal",
        pinned=existing.pinned if existing else False,
        expires_at=existing.expires_at if existing else None,
    )
