"""Upload result models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class MediaKind(StrEnum):
    IMAGE = "image"
    VIDEO = "video"


class StoredObject(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket: str
    path: str


class UploadResult(BaseModel):
    """Where an uploaded media file ended up."""

    model_config = ConfigDict(frozen=True)

    url: str
    path: str
    kind: MediaKind
    size: int
