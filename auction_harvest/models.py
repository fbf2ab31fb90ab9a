"""Data models for collected records and transfer units.

Upstream records are open-ended JSON. Only the identity a record is keyed on is
strictly typed; the other fields the pipelines read are untyped or coerced, and
everything else is kept as extra fields, so a record can be written back to
disk exactly as the API returned it.
"""
import re
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Identifier = Union[int, str]

_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")
UNKNOWN_BUCKET = "unknown"


def utcnow_iso() -> str:
    """Collection timestamp used on every persisted record."""
    return datetime.now(timezone.utc).isoformat()


class UpstreamRecord(BaseModel):
    """Base for API records: typed identity plus pass-through extras."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Identifier

    @property
    def key(self) -> str:
        return str(self.id)

    def to_storage(self) -> dict[str, Any]:
        """Return the record as received, annotated with collectedAt."""
        data = self.model_dump(mode="json", exclude_unset=True, by_alias=True)
        data["collectedAt"] = utcnow_iso()
        return data


class Auction(UpstreamRecord):
    """Top-level listing record."""

    title: Any = None
    status: Any = None
    starts: Any = None
    start_timestamp: Any = Field(default=None, alias="startTimestamp")

    @property
    def date_bucket(self) -> str:
        """YYYY-MM-DD partition derived from the start fields, else 'unknown'."""
        for candidate in (self.starts, self.start_timestamp):
            if isinstance(candidate, str):
                match = _DATE_PREFIX.match(candidate)
                if match:
                    return match.group(1)
            elif isinstance(candidate, (int, float)) and not isinstance(candidate, bool) and candidate > 0:
                try:
                    return datetime.fromtimestamp(candidate, tz=timezone.utc).date().isoformat()
                except (OverflowError, OSError, ValueError):
                    continue
        return UNKNOWN_BUCKET


class Lot(UpstreamRecord):
    """Child record belonging to exactly one auction."""

    auction_id: Any = None
    title: Any = None
    links: Any = None


class ImageEntry(BaseModel):
    """One image reference inside a lot images record."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    image_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("image_url", "sourceUrl", "source_url")
    )
    thumb_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("thumb_url", "thumbUrl")
    )
    width: Any = None
    height: Any = None
    archived: Any = None

    @field_validator("image_url", "thumb_url", mode="before")
    @classmethod
    def _url_or_none(cls, value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip():
            return value
        return None


class LotImages(BaseModel):
    """Sub-resource record persisted by the images phase."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    lot_id: Any = Field(default=None, validation_alias=AliasChoices("lotId", "lot_id"))
    auction_id: Any = Field(default=None, validation_alias=AliasChoices("auctionId", "auction_id"))
    result: Any = None
    data: list[ImageEntry] = Field(default_factory=list)

    @field_validator("data", mode="before")
    @classmethod
    def _image_entries(cls, value: Any) -> list:
        # Only dict entries describe images; anything else is ignored.
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict)]


class TransferUnit(BaseModel):
    """One source URL to destination key copy."""

    model_config = ConfigDict(frozen=True)

    source_url: str
    destination_key: str
    lot_id: Optional[str] = None
    auction_id: Optional[str] = None
    kind: str = "full"
    group: Optional[str] = None


class FailureRecord(BaseModel):
    """Per-unit failure kept in the checkpoint's bounded list."""

    key: str
    error: str
    source: Optional[str] = None
    parent_id: Optional[str] = None
    listing_id: Optional[str] = None
    timestamp: str = Field(default_factory=utcnow_iso)
