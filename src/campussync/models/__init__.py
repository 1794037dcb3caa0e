"""Typed models for backend records."""

from campussync.models._base import CampusBaseModel, parse_timestamp
from campussync.models.chat import ChatMessage, ChatRole
from campussync.models.media import MediaKind, StoredObject, UploadResult
from campussync.models.post import Post, PostComment, PostLike, Profile

__all__ = [
    "CampusBaseModel",
    "ChatMessage",
    "ChatRole",
    "MediaKind",
    "Post",
    "PostComment",
    "PostLike",
    "Profile",
    "StoredObject",
    "UploadResult",
    "parse_timestamp",
]
