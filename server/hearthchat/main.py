import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from .database import SessionLocal, engine, init_models
from .errors import AppError
from .routers import conversations, files, groups, messages, models, search
from .services.context import ContextAssembler, PgVectorSearch
from .services.exchange import ExchangeRegistry, ExchangeStreamer
from .services.files import FileLifecycle
from .services.llm import OllamaClient
from .services.tasks import BackgroundTaskPool

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def install_services(
    app: FastAPI,
    session_factory: async_sessionmaker,
    llm,
    pool: BackgroundTaskPool,
    vector_search=None,
    **streamer_options,
) -> None:
    """Wire the exchange engine onto ``app.state``."""
    context = ContextAssembler(llm, vector_search or PgVectorSearch(session_factory))
    app.state.task_pool = pool
    app.state.exchange_registry = ExchangeRegistry()
    app.state.file_lifecycle = FileLifecycle(session_factory, pool, llm)
    app.state.exchange_streamer = ExchangeStreamer(llm, context, pool, session_factory, **streamer_options)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models(engine)
    pool = BackgroundTaskPool()
    install_services(app, SessionLocal, OllamaClient(), pool)
    logger.info("HearthChat API ready")
    try:
        yield
    finally:
        await pool.shutdown()
        await engine.dispose()


app = FastAPI(title="HearthChat API", lifespan=lifespan)

# CORS (dev-friendly)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def handle_app_error(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg', 'invalid request')}" if where else first.get("msg", "invalid request")
    return JSONResponse(status_code=400, content={"error": {"code": "VALIDATION_ERROR", "message": message}})


app.include_router(groups.router, prefix="/api")
app.include_router(conversations.router, prefix="/api")
app.include_router(messages.router, prefix="/api")
app.include_router(files.router, prefix="/api")
app.include_router(models.router, prefix="/api")
app.include_router(search.router, prefix="/api")


@app.get("/healthz")
def health():
    return {"ok": True}
