"""Dependency injection for FastAPI"""
import asyncio
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional, Tuple

import asyncpg
from fastapi import Request

from app.config import settings
from app.core.chat_pipeline import ChatPipeline
from app.core.llm_factory import ChatModel, create_llm
from app.core.sql_exec import SQLExecutor
from app.core.thread_store import ThreadStore


class DatabasePool:
    """asyncpg pool manager for the CRM database"""

    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None
        self._connect_lock = asyncio.Lock()

    async def connect(self):
        """Create the bounded pool"""
        async with self._connect_lock:
            if self.pool is None:
                self.pool = await asyncpg.create_pool(
                    dsn=settings.database_url,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                    max_inactive_connection_lifetime=settings.db_pool_idle_seconds,
                    timeout=settings.db_connect_timeout_seconds,
                )

    async def close(self):
        """Close the pool"""
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def acquire(self, *, timeout: Optional[float] = None):
        """
        Scoped connection checkout; released on every exit path.

        A pool that failed to come up at startup is created here on first
        use, so requests recover once the database is reachable again.
        """
        if self.pool is None:
            await self.connect()
        async with self.pool.acquire(timeout=timeout) as conn:
            yield conn

    def stats(self) -> dict:
        if self.pool is None:
            return {"connected": False}
        return {
            "connected": True,
            "size": self.pool.get_size(),
            "idle": self.pool.get_idle_size(),
            "max_size": self.pool.get_max_size(),
        }


# Global instances
db_pool = DatabasePool()


def get_thread_store(request: Request) -> ThreadStore:
    """FastAPI dependency for the app-owned thread store"""
    return request.app.state.thread_store


@lru_cache(maxsize=1)
def _get_pass_llms() -> Tuple[ChatModel, ChatModel]:
    sql_handle = create_llm(
        purpose="chat.sql_generation",
        model=settings.sql_llm_model,
        temperature=settings.sql_llm_temperature,
    )
    answer_handle = create_llm(
        purpose="chat.answer_composition",
        model=settings.answer_llm_model,
        temperature=settings.answer_llm_temperature,
    )
    return sql_handle.llm, answer_handle.llm


def get_chat_pipeline(request: Request) -> ChatPipeline:
    """FastAPI dependency wiring the two LLM passes, executor and threads"""
    sql_llm, answer_llm = _get_pass_llms()
    return ChatPipeline(
        thread_store=get_thread_store(request),
        executor=SQLExecutor(db_pool),
        sql_llm=sql_llm,
        answer_llm=answer_llm,
    )
