"""
Postgres repository with pgvector similarity search.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg
import structlog

from domain.errors import StorageError
from domain.models import ChannelVibe, Interaction, Memory, UserProfile
from .repository import Repository

logger = structlog.get_logger(__name__)

MEMORY_COLUMNS = """
    id, content, kind, channel_id, user_id, metadata, significance,
    created_at, expires_at, reference_count, searchable_text, tags,
    context, participants
"""

PROFILE_UPDATABLE = {
    "display_name", "personality_traits", "speech_patterns",
    "activity_patterns", "relationship_summary", "last_seen",
}

VIBE_UPDATABLE = {
    "channel_name", "vibe_description", "typical_topics", "formality_level",
    "humor_tolerance", "response_frequency", "custom_rules",
}


def _schema(dimension: int) -> str:
    return f"""
    CREATE EXTENSION IF NOT EXISTS vector;

    CREATE TABLE IF NOT EXISTS memories (
        id UUID PRIMARY KEY,
        content TEXT NOT NULL,
        kind TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        user_id TEXT,
        embedding vector({dimension}),
        metadata JSONB NOT NULL DEFAULT '{{}}',
        significance DOUBLE PRECISION NOT NULL CHECK (significance >= 0 AND significance <= 1),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ CHECK (expires_at IS NULL OR expires_at >= created_at),
        reference_count INTEGER NOT NULL DEFAULT 0 CHECK (reference_count >= 0),
        searchable_text TEXT NOT NULL DEFAULT '',
        tags JSONB NOT NULL DEFAULT '[]',
        context TEXT NOT NULL DEFAULT '',
        participants JSONB NOT NULL DEFAULT '[]'
    );

    CREATE INDEX IF NOT EXISTS idx_memories_channel_recent ON memories(channel_id, created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id);
    CREATE INDEX IF NOT EXISTS idx_memories_expires ON memories(expires_at);
    CREATE INDEX IF NOT EXISTS idx_memories_embedding
        ON memories USING hnsw (embedding vector_cosine_ops);

    CREATE TABLE IF NOT EXISTS user_profiles (
        id UUID PRIMARY KEY,
        slack_id TEXT UNIQUE NOT NULL,
        display_name TEXT NOT NULL,
        personality_traits JSONB NOT NULL DEFAULT '{{}}',
        speech_patterns JSONB NOT NULL DEFAULT '{{}}',
        activity_patterns JSONB NOT NULL DEFAULT '{{}}',
        relationship_summary TEXT NOT NULL DEFAULT 'New member',
        last_seen TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    );

    CREATE TABLE IF NOT EXISTS channel_vibes (
        id UUID PRIMARY KEY,
        channel_id TEXT UNIQUE NOT NULL,
        channel_name TEXT NOT NULL,
        vibe_description TEXT NOT NULL,
        typical_topics JSONB NOT NULL DEFAULT '[]',
        formality_level DOUBLE PRECISION NOT NULL,
        humor_tolerance DOUBLE PRECISION NOT NULL,
        response_frequency DOUBLE PRECISION NOT NULL,
        custom_rules JSONB NOT NULL DEFAULT '{{}}',
        updated_at TIMESTAMPTZ NOT NULL
    );

    CREATE TABLE IF NOT EXISTS interactions (
        id UUID PRIMARY KEY,
        timestamp TIMESTAMPTZ NOT NULL,
        operation_type TEXT NOT NULL,
        tokens_used INTEGER NOT NULL DEFAULT 0,
        cost_usd NUMERIC(18, 10) NOT NULL DEFAULT 0,
        model_id TEXT NOT NULL,
        success BOOLEAN NOT NULL DEFAULT TRUE,
        error_message TEXT,
        channel_id TEXT,
        user_id TEXT
    );

    ALTER TABLE interactions ALTER COLUMN cost_usd TYPE NUMERIC(18, 10);
    CREATE INDEX IF NOT EXISTS idx_interactions_timestamp ON interactions(timestamp);
    """


def _vector_literal(embedding: List[float]) -> str:
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'DELETE 3'"""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


def _row_to_memory(row: asyncpg.Record) -> Memory:
    data = dict(row)
    data["id"] = str(data["id"])
    return Memory.model_validate(data)


def _row_to_profile(row: asyncpg.Record) -> UserProfile:
    data = dict(row)
    data["id"] = str(data["id"])
    return UserProfile.model_validate(data)


def _row_to_vibe(row: asyncpg.Record) -> ChannelVibe:
    data = dict(row)
    data["id"] = str(data["id"])
    return ChannelVibe.model_validate(data)


def _row_to_interaction(row: asyncpg.Record) -> Interaction:
    data = dict(row)
    data["id"] = str(data["id"])
    data["cost_usd"] = float(data["cost_usd"])
    return Interaction.model_validate(data)


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class PostgresRepository(Repository):
    """asyncpg-backed datastore; memories carry a pgvector column"""

    def __init__(self, dsn: str, embedding_dimension: int = 1536, min_size: int = 1, max_size: int = 6):
        self.dsn = dsn.strip()
        if not self.dsn:
            raise ValueError("database_url cannot be empty")
        self.embedding_dimension = embedding_dimension
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def init(self) -> None:
        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30.0,
                init=_init_connection,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(_schema(self.embedding_dimension))
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"Postgres initialization failed: {e}", operation="init") from e

        logger.info("Postgres repository initialized")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def _connection(self, operation: str):
        if self._pool is None:
            raise StorageError("Postgres pool not initialized", operation=operation)
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StorageError(f"Postgres {operation} failed: {e}", operation=operation) from e

    # Memories

    async def insert_memory(self, memory: Memory) -> None:
        embedding = _vector_literal(memory.embedding) if memory.has_vector else None

        async with self._connection("insert_memory") as conn:
            await conn.execute(
                """
                INSERT INTO memories (
                    id, content, kind, channel_id, user_id, embedding, metadata,
                    significance, created_at, expires_at, reference_count,
                    searchable_text, tags, context, participants
                ) VALUES ($1::uuid, $2, $3, $4, $5, $6::text::vector, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                """,
                memory.id, memory.content, memory.kind.value, memory.channel_id, memory.user_id,
                embedding, memory.metadata, memory.significance, memory.created_at,
                memory.expires_at, memory.reference_count, memory.searchable_text,
                memory.tags, memory.context, memory.participants,
            )

    async def vector_search(
        self,
        embedding: List[float],
        limit: int,
        channel_id: Optional[str],
        now: datetime,
    ) -> List[Memory]:
        async with self._connection("vector_search") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {MEMORY_COLUMNS} FROM memories
                WHERE embedding IS NOT NULL
                  AND (expires_at IS NULL OR expires_at > $2)
                  AND ($3::text IS NULL OR channel_id = $3)
                ORDER BY embedding <=> $1::text::vector
                LIMIT $4
                """,
                _vector_literal(embedding), now, channel_id, limit,
            )
        return [_row_to_memory(row) for row in rows]

    async def keyword_search(
        self,
        query: str,
        limit: int,
        channel_id: Optional[str],
        now: datetime,
        without_vector: bool = False,
    ) -> List[Memory]:
        async with self._connection("keyword_search") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {MEMORY_COLUMNS} FROM memories
                WHERE (expires_at IS NULL OR expires_at > $2)
                  AND ($3::text IS NULL OR channel_id = $3)
                  AND (searchable_text ILIKE $1 OR content ILIKE $1)
                  AND (NOT $5::boolean OR embedding IS NULL)
                ORDER BY significance DESC, created_at DESC
                LIMIT $4
                """,
                _like_pattern(query), now, channel_id, limit, without_vector,
            )
        return [_row_to_memory(row) for row in rows]

    async def recent_memories(self, channel_id: str, limit: int, now: datetime) -> List[Memory]:
        async with self._connection("recent_memories") as conn:
            rows = await conn.fetch(
                f"""
                SELECT {MEMORY_COLUMNS} FROM memories
                WHERE channel_id = $1
                  AND (expires_at IS NULL OR expires_at > $2)
                ORDER BY created_at DESC, significance DESC
                LIMIT $3
                """,
                channel_id, now, limit,
            )
        return [_row_to_memory(row) for row in rows]

    async def count_vectors(self, channel_id: Optional[str] = None, now: Optional[datetime] = None) -> int:
        async with self._connection("count_vectors") as conn:
            return await conn.fetchval(
                """
                SELECT COUNT(*) FROM memories
                WHERE embedding IS NOT NULL
                  AND ($1::timestamptz IS NULL OR expires_at IS NULL OR expires_at > $1)
                  AND ($2::text IS NULL OR channel_id = $2)
                """,
                now, channel_id,
            )

    async def increment_references(self, memory_ids: List[str]) -> None:
        if not memory_ids:
            return
        async with self._connection("increment_references") as conn:
            await conn.execute(
                "UPDATE memories SET reference_count = reference_count + 1 WHERE id = ANY($1::uuid[])",
                list(set(memory_ids)),
            )

    async def delete_expired(self, now: datetime) -> int:
        async with self._connection("delete_expired") as conn:
            status = await conn.execute(
                "DELETE FROM memories WHERE expires_at IS NOT NULL AND expires_at <= $1",
                now,
            )
        return _affected(status)

    async def delete_user_memories(self, user_id: str) -> int:
        async with self._connection("delete_user_memories") as conn:
            status = await conn.execute("DELETE FROM memories WHERE user_id = $1", user_id)
        return _affected(status)

    # Profiles

    async def get_profile(self, slack_id: str) -> Optional[UserProfile]:
        async with self._connection("get_profile") as conn:
            row = await conn.fetchrow("SELECT * FROM user_profiles WHERE slack_id = $1", slack_id)
        return _row_to_profile(row) if row else None

    async def insert_profile(self, profile: UserProfile) -> UserProfile:
        async with self._connection("insert_profile") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO user_profiles (
                    id, slack_id, display_name, personality_traits, speech_patterns,
                    activity_patterns, relationship_summary, last_seen, created_at, updated_at
                ) VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (slack_id) DO NOTHING
                RETURNING *
                """,
                profile.id, profile.slack_id, profile.display_name, profile.personality_traits,
                profile.speech_patterns, profile.activity_patterns, profile.relationship_summary,
                profile.last_seen, profile.created_at, profile.updated_at,
            )
            if row is None:
                row = await conn.fetchrow("SELECT * FROM user_profiles WHERE slack_id = $1", profile.slack_id)
        return _row_to_profile(row)

    async def update_profile(self, slack_id: str, changes: Dict[str, Any]) -> Optional[UserProfile]:
        columns = [column for column in changes if column in PROFILE_UPDATABLE]
        if not columns:
            return await self.get_profile(slack_id)

        assignments = ", ".join(f"{column} = ${i + 2}" for i, column in enumerate(columns))
        async with self._connection("update_profile") as conn:
            row = await conn.fetchrow(
                f"UPDATE user_profiles SET {assignments}, updated_at = NOW() WHERE slack_id = $1 RETURNING *",
                slack_id, *[changes[column] for column in columns],
            )
        return _row_to_profile(row) if row else None

    async def delete_profile(self, slack_id: str) -> bool:
        async with self._connection("delete_profile") as conn:
            status = await conn.execute("DELETE FROM user_profiles WHERE slack_id = $1", slack_id)
        return _affected(status) > 0

    # Channel vibes

    async def get_vibe(self, channel_id: str) -> Optional[ChannelVibe]:
        async with self._connection("get_vibe") as conn:
            row = await conn.fetchrow("SELECT * FROM channel_vibes WHERE channel_id = $1", channel_id)
        return _row_to_vibe(row) if row else None

    async def insert_vibe(self, vibe: ChannelVibe) -> ChannelVibe:
        async with self._connection("insert_vibe") as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO channel_vibes (
                    id, channel_id, channel_name, vibe_description, typical_topics,
                    formality_level, humor_tolerance, response_frequency, custom_rules, updated_at
                ) VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (channel_id) DO NOTHING
                RETURNING *
                """,
                vibe.id, vibe.channel_id, vibe.channel_name, vibe.vibe_description,
                vibe.typical_topics, vibe.formality_level, vibe.humor_tolerance,
                vibe.response_frequency, vibe.custom_rules, vibe.updated_at,
            )
            if row is None:
                row = await conn.fetchrow("SELECT * FROM channel_vibes WHERE channel_id = $1", vibe.channel_id)
        return _row_to_vibe(row)

    async def update_vibe(self, channel_id: str, changes: Dict[str, Any]) -> Optional[ChannelVibe]:
        columns = [column for column in changes if column in VIBE_UPDATABLE]
        if not columns:
            return await self.get_vibe(channel_id)

        assignments = ", ".join(f"{column} = ${i + 2}" for i, column in enumerate(columns))
        async with self._connection("update_vibe") as conn:
            row = await conn.fetchrow(
                f"UPDATE channel_vibes SET {assignments}, updated_at = NOW() WHERE channel_id = $1 RETURNING *",
                channel_id, *[changes[column] for column in columns],
            )
        return _row_to_vibe(row) if row else None

    # Interactions

    async def append_interaction(self, interaction: Interaction) -> None:
        async with self._connection("append_interaction") as conn:
            await conn.execute(
                """
                INSERT INTO interactions (
                    id, timestamp, operation_type, tokens_used, cost_usd, model_id,
                    success, error_message, channel_id, user_id
                ) VALUES ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                interaction.id, interaction.timestamp, interaction.operation_type,
                interaction.tokens_used, Decimal(str(interaction.cost_usd)), interaction.model_id,
                interaction.success, interaction.error_message, interaction.channel_id,
                interaction.user_id,
            )

    async def list_interactions(self, since: Optional[datetime] = None) -> List[Interaction]:
        async with self._connection("list_interactions") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM interactions
                WHERE ($1::timestamptz IS NULL OR timestamp >= $1)
                ORDER BY timestamp
                """,
                since,
            )
        return [_row_to_interaction(row) for row in rows]
