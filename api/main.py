# api/main.py
import time
from contextlib import asynccontextmanager
from typing import Optional

import requests
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api.actions import router as actions_router
from api.chats import router as chats_router
from api.errors import register_error_handlers
from api.files import router as files_router
from api.recommendations import router as recommendations_router
from api.sessions import router as sessions_router
from common.logging_setup import get_logger, setup_logging
from config import Settings
from db.init_db import init_db
from db.session import make_engine, make_session_factory
from db.store import ConversationStore
from dispatch.dispatcher import ActionDispatcher
from inference.ollama_client import OllamaClient
from recommender.catalog import ModelCatalog
from recommender.huggingface import HuggingFaceLookup
from streaming.turn_stream import StreamRegistry

log = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    log.info("Chat proxy ready on %s:%s, Ollama at %s", settings.host, settings.port, settings.ollama_host)
    yield
    pending = len(app.state.streams)
    if pending:
        log.warning("Shutting down with %d streams still running", pending)
    app.state.engine.dispose()
    log.info("Chat proxy stopped")


def create_app(settings: Optional[Settings] = None,
               http: Optional[requests.Session] = None,
               hf_http: Optional[requests.Session] = None) -> FastAPI:
    """Build the app and its services.

    ``http`` / ``hf_http`` replace the outbound sessions used for Ollama and
    the Hugging Face lookup.
    """
    settings = settings or Settings.load()
    setup_logging(settings)

    engine = make_engine(settings.database_url)
    init_db(engine)
    store = ConversationStore(make_session_factory(engine))
    client = OllamaClient.from_settings(settings, http=http)
    streams = StreamRegistry()
    lookup = HuggingFaceLookup(settings.huggingface_url, settings.huggingface_timeout, http=hf_http)

    app = FastAPI(title="Ollama Chat Proxy", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.client = client
    app.state.streams = streams
    app.state.dispatcher = ActionDispatcher(store, client, settings, streams=streams)
    app.state.catalog = ModelCatalog(client.list_models, lookup, ttl=settings.catalog_ttl)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Stream-Id", "X-Chat-Id"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        log.info("START %s %s", request.method, request.url.path)
        response = await call_next(request)
        log.info("END %s %s %s in %.1fms", request.method, request.url.path,
                 response.status_code, (time.perf_counter() - start) * 1000)
        return response

    register_error_handlers(app)

    @app.get("/health")
    def health():
        return {"ok": True, "streams": len(streams)}

    app.include_router(sessions_router)
    app.include_router(chats_router)
    app.include_router(actions_router)
    app.include_router(files_router)
    app.include_router(recommendations_router)
    return app
