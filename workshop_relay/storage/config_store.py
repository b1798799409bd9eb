"""
Student configuration persistence layer.

Stores one configuration record per session token in SQLite. Blocking sqlite
calls run in the default executor, serialized by a lock.
"""

import asyncio
import os
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.models import TenantConfig
from ..errors import ConfigLookupError
from ..logging_config import get_logger, token_prefix

logger = get_logger(__name__)


class StudentConfigStore:
    """SQLite-based student configuration storage."""

    _CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS student_configs (
        session_token TEXT PRIMARY KEY,
        student_name TEXT,
        openai_api_key TEXT,
        system_prompt TEXT,
        tools TEXT DEFAULT '[]',
        voice_settings TEXT DEFAULT '{}',
        greeting TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """

    _UPSERT_SQL = """
    INSERT INTO student_configs (
        session_token, student_name, openai_api_key, system_prompt,
        tools, voice_settings, greeting, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
    ON CONFLICT (session_token) DO UPDATE SET
        student_name = excluded.student_name,
        openai_api_key = excluded.openai_api_key,
        system_prompt = excluded.system_prompt,
        tools = excluded.tools,
        voice_settings = excluded.voice_settings,
        greeting = excluded.greeting,
        updated_at = CURRENT_TIMESTAMP
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Args:
            db_path: Path to the SQLite database file. Defaults to data/student_configs.db
        """
        self._db_path = db_path or os.getenv("CONFIG_DB_PATH", "data/student_configs.db")
        self._lock = threading.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except sqlite3.Error as e:
            raise ConfigLookupError(f"Configuration database error: {e}") from e

    async def initialize(self) -> None:
        """Create the database file and schema if needed."""
        def _init_sync():
            db_dir = os.path.dirname(self._db_path)
            if db_dir:
                Path(db_dir).mkdir(parents=True, exist_ok=True)
            with self._lock:
                conn = sqlite3.connect(self._db_path)
                try:
                    conn.execute(self._CREATE_TABLE_SQL)
                    conn.commit()
                finally:
                    conn.close()

        await self._run(_init_sync)
        logger.info("Student config database initialized", db_path=self._db_path)

    async def get(self, session_token: str) -> Optional[TenantConfig]:
        """Return the configuration for ``session_token`` or None."""
        def _get_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    row = conn.execute(
                        "SELECT * FROM student_configs WHERE session_token = ? LIMIT 1",
                        (session_token,),
                    ).fetchone()
                    return dict(row) if row else None
                finally:
                    conn.close()

        record = await self._run(_get_sync)
        if record is None:
            return None
        return TenantConfig.from_record(record)

    async def save(self, config: TenantConfig) -> None:
        """Insert or update the record for ``config.session_token``."""
        record = config.to_record()

        def _save_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    conn.execute(self._UPSERT_SQL, (
                        record["session_token"],
                        record["student_name"],
                        record["openai_api_key"],
                        record["system_prompt"],
                        record["tools"],
                        record["voice_settings"],
                        record["greeting"],
                    ))
                    conn.commit()
                finally:
                    conn.close()

        await self._run(_save_sync)
        logger.info("Saved student config", session=token_prefix(config.session_token))

    async def list_recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Newest records first, without secrets."""
        def _list_sync():
            with self._lock:
                conn = self._get_connection()
                try:
                    rows = conn.execute(
                        """
                        SELECT session_token, student_name, created_at, updated_at
                        FROM student_configs
                        ORDER BY created_at DESC, rowid DESC
                        LIMIT ?
                        """,
                        (limit,),
                    ).fetchall()
                    return [dict(row) for row in rows]
                finally:
                    conn.close()

        return await self._run(_list_sync)
