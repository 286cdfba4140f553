"""branchchat FastAPI application entry point (reference persistence server)."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from branchchat.chats.router import get_chat_service
from branchchat.chats.router import router as chats_router
from branchchat.chats.router import speakers_router
from branchchat.chats.service import ChatService
from branchchat.db.connection import Database


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")

    db = await Database.connect(os.environ.get("BRANCHCHAT_DB_PATH", "branchchat.db"))

    service = ChatService(db)
    await service.seed_default_speakers()
    app.dependency_overrides[get_chat_service] = lambda: service

    app.state.db = db
    yield

    await db.close()


def _cors_origins() -> list[str]:
    raw = os.environ.get("BRANCHCHAT_CORS_ORIGINS", "http://localhost:5173")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(
    title="branchchat",
    description="Durable storage for branching chat conversations",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chats_router)
app.include_router(speakers_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}
