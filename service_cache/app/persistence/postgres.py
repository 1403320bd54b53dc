"""
PostgreSQL access for the data behind the cache service.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import asyncpg
from shared.logging import get_logger
from shared.errors import TechTrendException
from ..models import FavoriteStatus, TagCloudEntry, ViewStatus


class ArticleStore:
    """Read-only queries against the TechTrend article database."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("cache.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30
            )
            self.logger.info("PostgreSQL store started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL store", error=str(e))
            raise TechTrendException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL store stopped")

    def _get_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise TechTrendException("POSTGRES_NOT_STARTED", "PostgreSQL store is not started")
        return self.pool

    async def health_check(self) -> bool:
        """True when a trivial query succeeds."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as e:
            self.logger.error("PostgreSQL health check failed", error=str(e))
            return False

    async def fetch_favorites(self, user_id: str, article_ids: List[str]) -> Dict[str, FavoriteStatus]:
        """Favorite status for each requested article; absent rows mean not favorited."""
        if not article_ids:
            return {}

        async with self._get_pool().acquire() as conn:
            rows = await conn.fetch("""
                SELECT article_id, created_at FROM favorites
                WHERE user_id = $1 AND article_id = ANY($2::text[])
            """, user_id, article_ids)

        found = {row["article_id"]: row for row in rows}
        return {
            article_id: FavoriteStatus(
                article_id=article_id,
                is_favorited=article_id in found,
                favorited_at=found[article_id]["created_at"] if article_id in found else None,
            )
            for article_id in article_ids
        }

    async def fetch_views(self, user_id: str, article_ids: List[str]) -> Dict[str, ViewStatus]:
        """View and read status for each requested article."""
        if not article_ids:
            return {}

        async with self._get_pool().acquire() as conn:
            rows = await conn.fetch("""
                SELECT article_id, viewed_at, is_read, read_at FROM article_views
                WHERE user_id = $1 AND article_id = ANY($2::text[])
            """, user_id, article_ids)

        statuses: Dict[str, ViewStatus] = {}
        found = {row["article_id"]: row for row in rows}
        for article_id in article_ids:
            row = found.get(article_id)
            if row is None:
                statuses[article_id] = ViewStatus(article_id=article_id)
                continue
            statuses[article_id] = ViewStatus(
                article_id=article_id,
                is_viewed=True,
                viewed_at=row["viewed_at"],
                is_read=bool(row["is_read"]),
                read_at=row["read_at"],
            )
        return statuses

    async def overall_stats(self) -> Dict[str, Any]:
        """Article, source and tag counts for the dashboard."""
        now = datetime.now(timezone.utc)
        async with self._get_pool().acquire() as conn:
            row = await conn.fetchrow("""
                SELECT
                    (SELECT COUNT(*) FROM articles) AS article_count,
                    (SELECT COUNT(*) FROM sources WHERE enabled = TRUE) AS source_count,
                    (SELECT COUNT(*) FROM tags) AS tag_count,
                    (SELECT COUNT(*) FROM articles WHERE created_at >= $1) AS last_hour_count
            """, now - timedelta(hours=1))

        return {
            "articleCount": row["article_count"],
            "sourceCount": row["source_count"],
            "tagCount": row["tag_count"],
            "lastHour": {"count": row["last_hour_count"]},
            "lastDay": {
                "from": (now - timedelta(days=1)).isoformat(),
                "to": now.isoformat(),
            },
        }

    async def tag_cloud(self, limit: int = 50) -> List[TagCloudEntry]:
        """Most used tags with their article counts."""
        async with self._get_pool().acquire() as conn:
            rows = await conn.fetch("""
                SELECT t.name, t.category, COUNT(at.article_id) AS count
                FROM tags t
                LEFT JOIN article_tags at ON at.tag_id = t.id
                GROUP BY t.id, t.name, t.category
                ORDER BY count DESC, t.name ASC
                LIMIT $1
            """, limit)

        return [
            TagCloudEntry(name=row["name"], count=row["count"], category=row["category"])
            for row in rows
        ]
