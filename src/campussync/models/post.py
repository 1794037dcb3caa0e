"""Feed post models."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from campussync.models._base import CampusBaseModel, CampusTimestamp

#: Columns fetched for a fully denormalised feed post.
POST_COLUMNS = (
    "*,"
    "author:profiles!posts_author_id_fkey(*),"
    "pinned_by_user:profiles!posts_pinned_by_fkey(*),"
    "comments:post_comments(*,author:profiles!post_comments_user_id_fkey(*)),"
    "likes:post_likes(*)"
)


class Profile(CampusBaseModel):
    id: str
    name: str | None = None
    avatar_url: str | None = None
    role: str | None = None


class PostLike(CampusBaseModel):
    post_id: str
    user_id: str
    created_at: CampusTimestamp = None


class PostComment(CampusBaseModel):
    id: str
    post_id: str | None = None
    user_id: str | None = None
    content: str = ""
    created_at: CampusTimestamp = None
    author: Profile | None = None


class Post(CampusBaseModel):
    """A feed post with its author, pin state, comments and likes."""

    id: str
    author_id: str | None = None
    content: str = ""
    media_url: str | None = None
    media_type: str | None = None
    created_at: CampusTimestamp = None
    updated_at: CampusTimestamp = None
    is_pinned: bool = False
    pinned_at: CampusTimestamp = None
    pinned_by: str | None = None
    is_saved: bool = False
    author: Profile | None = None
    pinned_by_user: Profile | None = None
    comments: list[PostComment] = Field(default_factory=list)
    likes: list[PostLike] = Field(default_factory=list)

    @property
    def like_count(self) -> int:
        return len(self.likes)

    def liked_by(self, user_id: str) -> bool:
        return any(like.user_id == user_id for like in self.likes)


def likes_of(record: dict[str, Any]) -> list[dict[str, Any]]:
    """The ``likes`` list of a raw post row (empty when absent)."""
    likes = record.get("likes")
    return [like for like in likes if isinstance(like, dict)] if isinstance(likes, list) else []
