"""FastAPI main application"""
from dotenv import load_dotenv
load_dotenv()

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.core.thread_store import ThreadStore
from app.deps import db_pool
from app.routers import chat
from app.smart_logger import SmartLogger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    print("Starting CRM Insight Agent API...")
    app.state.thread_store = ThreadStore.from_settings(settings)
    try:
        await db_pool.connect()
        print(f"Database pool ready (max_size={settings.db_pool_max_size})")
    except Exception as e:
        # Keep serving: queries fail into the narrated answer until the DB is back
        print(f"Database pool warning: {e}")
        SmartLogger.log(
            "WARNING",
            "main.lifespan.db_pool.warning",
            category="main.lifespan.start",
            params={"error": str(e)},
            max_inline_chars=0,
        )
    print(f"Using LLM: {settings.llm_provider} sql={settings.sql_llm_model} answer={settings.answer_llm_model}")

    yield

    print("Shutting down...")
    await db_pool.close()


app = FastAPI(
    title="CRM Insight Agent API",
    description="""
    Ask questions about your CRM in plain language.

    1. Chat: `POST /chat` (streamed answer)
    2. Inspect a conversation: `GET /chat/threads/{thread_id}`
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "CRM Insight Agent API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    try:
        async with db_pool.acquire(timeout=settings.db_connect_timeout_seconds) as conn:
            await conn.fetchval("SELECT 1")
        return {
            "status": "healthy",
            "database": db_pool.stats(),
            "config": {
                "llm_provider": settings.llm_provider,
                "sql_llm_model": settings.sql_llm_model,
                "answer_llm_model": settings.answer_llm_model,
            },
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
    )
