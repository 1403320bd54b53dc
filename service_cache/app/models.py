"""
Data models for the cache service.
"""

from typing import Any, Dict, Generic, List, Optional, TypeVar
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


V = TypeVar("V")


class CamelModel(BaseModel):
    """Model serialised with camelCase keys, constructible with either form."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FavoriteStatus(CamelModel):
    """Whether a user has favorited an article."""
    article_id: str
    is_favorited: bool = False
    favorited_at: Optional[datetime] = None


class ViewStatus(CamelModel):
    """Whether a user has opened and read an article."""
    article_id: str
    is_viewed: bool = False
    viewed_at: Optional[datetime] = None
    is_read: bool = False
    read_at: Optional[datetime] = None


class TagCloudEntry(CamelModel):
    """Tag with its article count."""
    name: str
    count: int
    category: Optional[str] = None


class ArticleStatusRequest(BaseModel):
    """Batch status lookup for one user."""
    user_id: str = Field(..., min_length=1)
    article_ids: List[str] = Field(default_factory=list, max_length=1000)


class ArticleStatus(CamelModel):
    """Combined favorite and read status of one article."""
    article_id: str
    favorite: FavoriteStatus
    view: ViewStatus


class ArticleUpdateEvent(BaseModel):
    """Body of the article-updated hook."""
    changes: List[str] = Field(default_factory=list)


class ArticleCreateEvent(BaseModel):
    """Body of the article-created hook."""
    category: Optional[str] = None
    source_id: Optional[str] = None


class BulkImportEvent(BaseModel):
    """Body of the bulk-import hook."""
    imported: int = 0


@dataclass
class NamespaceStats:
    """Hit/miss counters for one cache namespace."""
    hits: int = 0
    misses: int = 0
    errors: int = 0
    last_reset_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def hit_rate(self) -> int:
        """Hit rate as a whole percentage, 0 before any traffic."""
        total = self.hits + self.misses
        if total == 0:
            return 0
        # Half-up rounding, 62.5 -> 63
        return int(self.hits * 100 / total + 0.5)

    def reset(self):
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.last_reset_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hitRate": self.hit_rate,
            "lastResetAt": self.last_reset_at.isoformat(),
        }


@dataclass
class BatchResult(Generic[V]):
    """Values of one batched fetch, aligned with the requested keys.

    Cache counters let the batch-size optimizer see how much of the batch was
    served without touching the database.
    """
    values: List[Optional[V]]
    cache_hits: int = 0
    cache_misses: int = 0
