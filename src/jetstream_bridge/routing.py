"""
Routing metadata for Jetstream events.

Each event published to the stream carries a flat ``str -> str`` header
mapping derived from the event JSON, so stream consumers can filter on
collection type, language, media presence, etc. without decoding the body.
The payload bytes are never modified.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

COMMIT_KIND = "commit"
DELETE_OPERATION = "delete"
MEDIA_EMBED_PREFIX = "app.bsky.embed."
OTHER_TYPE = "other"

# Collection NSID -> short type tag
COLLECTION_TYPES = {
    "app.bsky.feed.post": "post",
    "app.bsky.feed.like": "like",
    "app.bsky.feed.repost": "repost",
    "app.bsky.graph.follow": "follow",
    "app.bsky.graph.block": "block",
    "app.bsky.graph.list": "list",
    "app.bsky.graph.listitem": "listitem",
    "app.bsky.graph.starterpack": "starterpack",
    "app.bsky.actor.profile": "profile",
    "app.bsky.feed.generator": "generator",
    "app.bsky.feed.threadgate": "threadgate",
    "app.bsky.feed.postgate": "postgate",
}


# ============================================================================
# DATA MODELS
# ============================================================================

class LenientModel(BaseModel):
    """Fields that fail validation are read as missing instead of failing the event."""

    @field_validator("*", mode="wrap")
    @classmethod
    def _missing_on_error(cls, value: Any, handler: Any) -> Any:
        try:
            return handler(value)
        except ValidationError:
            return None


class JetstreamRecord(LenientModel):
    """The subset of a commit record used for routing."""
    model_config = ConfigDict(populate_by_name=True)

    record_type: Optional[str] = Field(default=None, alias="$type")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    langs: Optional[List[str]] = None
    text: Optional[str] = None
    embed: Optional[Dict[str, Any]] = None


class JetstreamCommit(LenientModel):
    rev: Optional[str] = None
    operation: Optional[str] = None
    collection: Optional[str] = None
    rkey: Optional[str] = None
    cid: Optional[str] = None
    record: Optional[JetstreamRecord] = None


class JetstreamEvent(LenientModel):
    """Envelope of a Jetstream firehose event."""
    did: Optional[str] = None
    time_us: Optional[int] = None
    kind: Optional[str] = None
    commit: Optional[JetstreamCommit] = None


# ============================================================================
# METADATA DERIVATION
# ============================================================================

def collection_type(collection: Optional[str]) -> str:
    return COLLECTION_TYPES.get(collection or "", OTHER_TYPE)


def date_from_time_us(time_us: Optional[int]) -> Optional[str]:
    """Convert a microsecond Unix timestamp to a UTC ``YYYY-MM-DD`` date."""
    if time_us is None:
        return None
    try:
        return datetime.fromtimestamp(time_us / 1_000_000, tz=timezone.utc).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def date_from_iso(timestamp: Optional[str]) -> Optional[str]:
    """Convert an ISO-8601 timestamp (``Z`` suffix allowed) to its ``YYYY-MM-DD`` date."""
    if not timestamp:
        return None
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date().isoformat()


def has_media(record: JetstreamRecord) -> bool:
    embed_type = (record.embed or {}).get("$type")
    return isinstance(embed_type, str) and embed_type.startswith(MEDIA_EMBED_PREFIX)


def build_routing_metadata(event: JetstreamEvent) -> Dict[str, str]:
    """Derive header metadata from a parsed event.

    Identifier keys are always present (empty string when the source field
    is missing); ``date`` and ``created_date`` are omitted when their source
    timestamp is absent. Record-derived keys (``lang``, ``created_at``,
    ``text_length``, ``has_media``) are only set for non-delete commits.
    """
    metadata = {
        "kind": event.kind or "",
        "did": event.did or "",
    }
    date = date_from_time_us(event.time_us)
    if date:
        metadata["date"] = date

    if event.kind != COMMIT_KIND:
        return metadata

    commit = event.commit or JetstreamCommit()
    metadata.update({
        "operation": commit.operation or "",
        "collection": commit.collection or "",
        "type": collection_type(commit.collection),
        "rkey": commit.rkey or "",
        "cid": commit.cid or "",
    })

    if commit.operation == DELETE_OPERATION:
        return metadata

    record = commit.record or JetstreamRecord()
    metadata["lang"] = record.langs[0] if record.langs else ""
    metadata["created_at"] = record.created_at or ""
    created_date = date_from_iso(record.created_at)
    if created_date:
        metadata["created_date"] = created_date
    metadata["text_length"] = str(len(record.text or ""))
    metadata["has_media"] = "true" if has_media(record) else "false"
    return metadata


def extract_routing_metadata(raw: bytes) -> Dict[str, str]:
    """Parse raw event bytes and derive routing metadata.

    Raises:
        ValueError: If the payload is not a JSON object
            (``pydantic.ValidationError`` is a ``ValueError``).
    """
    return build_routing_metadata(JetstreamEvent.model_validate_json(raw))
