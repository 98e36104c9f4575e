"""
StudySpark Scheduling Backend - Database Connection
Async PostgreSQL with asyncpg
"""

import json
from datetime import datetime
from typing import Any, Optional, List

import asyncpg

from config import get_database_config
from logger import get_logger

logger = get_logger(__name__)


class Database:
    """Async database connection manager."""

    def __init__(self):
        self._pool = None

    @property
    def connected(self) -> bool:
        return self._pool is not None

    async def connect(self):
        """Create connection pool."""
        config = get_database_config()
        self._pool = await asyncpg.create_pool(
            config.url,
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
        )
        logger.info("Database connected")

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database disconnected")

    async def fetch(self, query: str, *args) -> List[dict]:
        """Fetch multiple rows."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def fetch_one(self, query: str, *args) -> Optional[dict]:
        """Fetch single row."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row else None

    async def execute(self, query: str, *args) -> str:
        """Execute query (INSERT, UPDATE, DELETE)."""
        async with self._pool.acquire() as conn:
            return await conn.execute(query, *args)

    async def execute_many(self, query: str, args: List[tuple]) -> None:
        """Execute one statement for each argument tuple."""
        async with self._pool.acquire() as conn:
            await conn.executemany(query, args)

    async def execute_returning(self, query: str, *args) -> Optional[dict]:
        """Execute and return the affected row."""
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            return dict(row) if row else None

    async def execute_script(self, script: str) -> None:
        """Run a multi-statement script (schema migrations)."""
        async with self._pool.acquire() as conn:
            await conn.execute(script)


# Global database instance
db = Database()


def load_json(value: Any, default: Any = None) -> Any:
    """JSONB columns arrive as text from asyncpg unless a codec is registered."""
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


# ============================================
# TASK QUERIES
# ============================================

async def get_pending_tasks(user_id: str, database: Database = db) -> List[dict]:
    return await database.fetch(
        """SELECT * FROM tasks
           WHERE user_id = $1 AND completed = false
           ORDER BY due_date ASC NULLS LAST""",
        user_id
    )


async def get_completed_history(user_id: str, limit: int = 100, database: Database = db) -> List[dict]:
    return await database.fetch(
        """SELECT * FROM tasks
           WHERE user_id = $1 AND completed = true
           ORDER BY updated_at DESC
           LIMIT $2""",
        user_id, limit
    )


async def get_completed_since(user_id: str, since: Optional[datetime], database: Database = db) -> List[dict]:
    if since is None:
        return await get_completed_history(user_id, database=database)
    return await database.fetch(
        """SELECT * FROM tasks
           WHERE user_id = $1 AND completed = true
             AND COALESCE(completed_at, updated_at) > $2
           ORDER BY updated_at DESC""",
        user_id, since
    )


# ============================================
# TIMETABLE & PROFILE QUERIES
# ============================================

async def get_timetable_entries(user_id: str, database: Database = db) -> List[dict]:
    return await database.fetch(
        "SELECT * FROM user_timetables WHERE user_id = $1 ORDER BY start_time",
        user_id
    )


async def get_user_profile(user_id: str, database: Database = db) -> Optional[dict]:
    row = await database.fetch_one(
        "SELECT user_id, ai_preferences FROM profiles WHERE user_id = $1",
        user_id
    )
    if row:
        row["ai_preferences"] = load_json(row.get("ai_preferences"), {})
    return row


# ============================================
# AI PATTERN QUERIES
# ============================================

async def get_user_patterns(user_id: str, database: Database = db) -> Optional[dict]:
    row = await database.fetch_one(
        "SELECT * FROM user_ai_patterns WHERE user_id = $1",
        user_id
    )
    if row:
        row["pattern_data"] = load_json(row.get("pattern_data"), {})
        row["preferences"] = load_json(row.get("preferences"), {})
        row["data_sources"] = load_json(row.get("data_sources"), [])
    return row


async def upsert_user_patterns(
    user_id: str,
    pattern_data: dict,
    preferences: dict,
    data_sources: list,
    analyzed_at: datetime,
    database: Database = db,
) -> Optional[dict]:
    """Merge new pattern data over the stored value; one row per user."""
    return await database.execute_returning(
        """INSERT INTO user_ai_patterns
           (user_id, pattern_data, preferences, data_sources, last_analyzed_at, analysis_version)
           VALUES ($1, $2::jsonb, $3::jsonb, $4::jsonb, $5, 2)
           ON CONFLICT (user_id) DO UPDATE SET
               pattern_data = user_ai_patterns.pattern_data || EXCLUDED.pattern_data,
               preferences = EXCLUDED.preferences,
               data_sources = EXCLUDED.data_sources,
               last_analyzed_at = EXCLUDED.last_analyzed_at,
               analysis_version = EXCLUDED.analysis_version,
               updated_at = NOW()
           RETURNING user_id, last_analyzed_at""",
        user_id,
        json.dumps(pattern_data, default=str),
        json.dumps(preferences, default=str),
        json.dumps(data_sources, default=str),
        analyzed_at
    )


# ============================================
# SYSTEM QUERIES
# ============================================

async def log_system(level: str, message: str, context: dict = None, database: Database = db) -> None:
    await database.execute(
        "INSERT INTO system_logs (level, message, context) VALUES ($1, $2, $3)",
        level, message, json.dumps(context, default=str) if context else None
    )


# ============================================
# DATABASE SCHEMA MIGRATION
# ============================================

SCHEDULE_SCHEMA = """
-- Source tables owned by the wider application; created here for local setups
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    subject TEXT,
    due_date TIMESTAMP WITH TIME ZONE,
    priority VARCHAR(10) DEFAULT 'medium',
    type VARCHAR(20) DEFAULT 'academic',
    completed BOOLEAN DEFAULT FALSE,
    completed_at TIMESTAMP WITH TIME ZONE,
    estimated_duration INTEGER,
    time_spent INTEGER,
    difficulty_level REAL,
    reminder BOOLEAN DEFAULT FALSE,
    recurrence_rule VARCHAR(10),
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_tasks_user_completed
    ON tasks(user_id, completed, updated_at);

CREATE TABLE IF NOT EXISTS user_timetables (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    course_name TEXT NOT NULL,
    days_of_week TEXT[] NOT NULL DEFAULT '{}',
    start_time VARCHAR(8),  -- "HH:MM"
    end_time VARCHAR(8),    -- "HH:MM"
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS profiles (
    user_id TEXT PRIMARY KEY,
    ai_preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

-- Learned patterns, merged on every analysis
CREATE TABLE IF NOT EXISTS user_ai_patterns (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE,
    pattern_data JSONB NOT NULL DEFAULT '{}'::jsonb,
    preferences JSONB NOT NULL DEFAULT '{}'::jsonb,
    data_sources JSONB NOT NULL DEFAULT '{}'::jsonb,
    last_analyzed_at TIMESTAMP WITH TIME ZONE,
    analysis_version INTEGER NOT NULL DEFAULT 2,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS current_schedules (
    user_id TEXT PRIMARY KEY,
    schedule JSONB NOT NULL DEFAULT '[]'::jsonb,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

-- Append-only
CREATE TABLE IF NOT EXISTS schedule_history (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    schedule JSONB NOT NULL DEFAULT '[]'::jsonb,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_schedule_history_user
    ON schedule_history(user_id, created_at DESC);

-- One tracking row per placement
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    subject TEXT,
    scheduled_start TIMESTAMP WITH TIME ZONE NOT NULL,
    scheduled_end TIMESTAMP WITH TIME ZONE NOT NULL,
    actual_start TIMESTAMP WITH TIME ZONE,
    actual_end TIMESTAMP WITH TIME ZONE,
    confidence_score REAL CHECK (confidence_score >= 0 AND confidence_score <= 1),
    reasoning TEXT,
    was_rescheduled BOOLEAN DEFAULT FALSE,
    reschedule_reason TEXT,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_user_created
    ON scheduled_tasks(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_task
    ON scheduled_tasks(task_id);

CREATE TABLE IF NOT EXISTS system_logs (
    id SERIAL PRIMARY KEY,
    level VARCHAR(20) NOT NULL,
    message TEXT NOT NULL,
    context JSONB,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);
"""


async def ensure_schedule_tables(database: Database = db) -> bool:
    """Create scheduling tables if they don't exist."""
    try:
        await database.execute_script(SCHEDULE_SCHEMA)
        logger.info("Scheduling tables ready")
        return True
    except asyncpg.PostgresError as e:
        logger.error(f"Error creating scheduling tables: {e}")
        return False
