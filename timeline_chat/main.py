from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from timeline_chat.api.routes import chat
from timeline_chat.config import settings
from timeline_chat.llm_client import client
from timeline_chat.services.logger import log_event


@asynccontextmanager
async def lifespan(app: FastAPI):
    configured = [name for name, key in (("openai", settings.openai_api_key), ("gemini", settings.gemini_api_key)) if key]
    log_event("startup", "Timeline Chat starting", store_dir=settings.store_dir, providers=configured)
    yield
    await client().aclose()
    log_event("shutdown", "Timeline Chat stopped")


app = FastAPI(
    title="Timeline Chat",
    description="Grounded question answering over timeline summaries",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-request-id"],
)

# Routes
app.include_router(chat.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "timeline-chat"}
