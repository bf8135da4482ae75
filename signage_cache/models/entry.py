"""
Pydantic models for manifest content descriptors and persisted cache entries.
"""

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class MediaType(str, Enum):
    """Kinds of media the player can show."""

    VIDEO = "video"
    IMAGE = "image"

    @property
    def subdir(self) -> str:
        """Name of the cache subdirectory holding this media type."""
        return f"{self.value}s"


def _coerce_media_type(value: Any) -> Any:
    # Anything the manifest does not call a video is displayed as an image.
    if isinstance(value, MediaType):
        return value
    return MediaType.VIDEO if str(value).lower() == "video" else MediaType.IMAGE


class ContentDescriptor(BaseModel):
    """A single item of the server manifest."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    url: str = Field(validation_alias=AliasChoices("url", "file_url", "fileUrl"))
    type: MediaType = MediaType.IMAGE
    content_id: str = Field(validation_alias=AliasChoices("content_id", "contentId", "id"))
    updated_at: str = Field(
        validation_alias=AliasChoices("updated_at", "updatedAt"),
    )
    title: str = ""
    duration: float | None = Field(
        default=None, validation_alias=AliasChoices("duration", "duration_sec")
    )

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return _coerce_media_type(v)

    @field_validator("content_id", "updated_at", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        """Ids and version tokens are opaque strings, whatever the server sent."""
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v:
            raise ValueError("Content URL cannot be empty.")
        return v


class CacheEntry(BaseModel):
    """Metadata for one downloaded media file, keyed by its source URL."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    local_path: Path = Field(validation_alias=AliasChoices("local_path", "localPath"))
    type: MediaType
    updated_at: str = Field(validation_alias=AliasChoices("updated_at", "updatedAt"))
    cached_at: int = Field(validation_alias=AliasChoices("cached_at", "cachedAt"))
    size: int = 0
    content_id: str = Field(validation_alias=AliasChoices("content_id", "contentId"))
    verified: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        return _coerce_media_type(v)

    @field_validator("content_id", "updated_at", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Any:
        if isinstance(v, (int, float)):
            return str(v)
        return v

    def to_document(self) -> dict[str, Any]:
        """Serializes the entry for the metadata file. `verified` is never persisted."""
        return self.model_dump(mode="json", exclude={"verified"})
