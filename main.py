"""
Evidentia API Server

Runs task requests through the grounded generation pipeline and exposes
the audit trail (query, statistics, export and lookup) plus health checks.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from evidentia.api.handlers.audit import router as audit_router
from evidentia.api.handlers.health import router as health_router
from evidentia.api.handlers.tasks import router as tasks_router
from evidentia.api.middleware.request_logger import RequestLoggerMiddleware
from evidentia.api.models.errors import server_error
from evidentia.core.audit_logger import AuditLogger
from evidentia.core.grounding import GroundingRetriever
from evidentia.core.pipeline import GenerationPipeline
from evidentia.core.providers.ollama_provider import OllamaProvider
from evidentia.lib.cache import TTLCache
from evidentia.lib.config import ConfigLoader
from evidentia.lib.logger import get_logger, setup_logging
from evidentia.lib.retry import RetryPolicy
from evidentia.storage.audit_store import InMemoryAuditStorage
from evidentia.storage.knowledge_store import KnowledgeStore
from evidentia.tools.web_search import WebSearchTool

logger = get_logger(__name__)

VERSION = "0.1.0"


def build_pipeline(config_loader: ConfigLoader) -> GenerationPipeline:
    """Construct the pipeline and its collaborators from configuration."""
    app_config = config_loader.app

    knowledge_store = KnowledgeStore.from_yaml(config_loader.get_env("knowledge_file"))
    cache = TTLCache(
        max_entries=app_config.cache.max_entries,
        ttl_seconds=app_config.cache.ttl_seconds,
        name="grounding",
    )

    search_tool = None
    if app_config.retrieval.enable_web_search:
        search_tool = WebSearchTool(
            {"tavily_api_key": config_loader.get_env("tavily_api_key"), "enabled": True},
            cache=cache,
        )

    retriever = GroundingRetriever(
        knowledge_store,
        search_tool=search_tool,
        config=app_config.retrieval,
        cache=cache,
        call_timeout=app_config.pipeline.call_timeout_seconds,
        retry_policy=RetryPolicy(backoff_base_seconds=app_config.pipeline.backoff_base_seconds),
    )

    gateway = OllamaProvider(
        model_name=config_loader.get_env("model_name"),
        base_url=config_loader.get_env("ollama_base_url"),
        timeout=app_config.pipeline.call_timeout_seconds,
    )

    audit_logger = AuditLogger(InMemoryAuditStorage(max_entries=app_config.audit.max_entries))

    return GenerationPipeline(retriever, gateway, audit_logger, config=app_config)


def attach_pipeline(app: FastAPI, pipeline: GenerationPipeline) -> None:
    app.state.pipeline = pipeline
    app.state.audit_logger = pipeline.audit_logger
    app.state.audit_storage = pipeline.audit_logger.storage
    app.state.knowledge_store = pipeline.retriever.knowledge_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    logger.info("Starting Evidentia API server")

    owned = getattr(app.state, "pipeline", None) is None
    if owned:
        logger.info("Initializing knowledge store, search tool and model gateway...")
        attach_pipeline(app, build_pipeline(app.state.config_loader))
        logger.info("Pipeline initialized successfully")

    yield

    logger.info("Shutting down API server")
    if owned:
        pipeline = app.state.pipeline
        await pipeline.close()
        if pipeline.retriever.search_tool is not None:
            await pipeline.retriever.search_tool.close()


def create_app(
    pipeline: GenerationPipeline | None = None,
    config_loader: ConfigLoader | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        pipeline: Pre-built pipeline; when omitted the lifespan builds one
            from configuration and closes it on shutdown
        config_loader: Configuration (default: ./config and ./.env)

    Returns:
        FastAPI application
    """
    config_loader = config_loader or ConfigLoader()

    setup_logging(
        log_level=config_loader.get("logging.level", config_loader.get_env("log_level", "INFO")),
        log_file=config_loader.get("logging.file"),
        structured=config_loader.get("logging.structured", False),
    )

    app = FastAPI(
        title="Evidentia API",
        description="Grounded, validated and audited structured generation",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.config_loader = config_loader
    if pipeline is not None:
        attach_pipeline(app, pipeline)

    if config_loader.get("server.cors.enabled", False):
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config_loader.get("server.cors.allow_origins", ["*"]),
            allow_credentials=True,
            allow_methods=config_loader.get("server.cors.allow_methods", ["GET", "POST", "OPTIONS"]),
            allow_headers=config_loader.get("server.cors.allow_headers", ["Content-Type"]),
        )
        logger.info("CORS enabled")

    app.add_middleware(RequestLoggerMiddleware)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions with the standard error body."""
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=server_error("Internal server error", code="internal_error").model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Unwrap ``{"error": {...}}`` details so they are returned at the top level."""
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            return JSONResponse(status_code=exc.status_code, content=exc.detail)

        return JSONResponse(
            status_code=exc.status_code,
            content=server_error(str(exc.detail)).model_dump(),
        )

    @app.get("/")
    async def root():
        """API root endpoint."""
        return {
            "message": "Evidentia API",
            "version": VERSION,
            "docs": "/docs",
            "endpoints": {
                "tasks": "/v1/tasks",
                "audit_entries": "/v1/audit/entries",
                "audit_stats": "/v1/audit/stats",
                "audit_export": "/v1/audit/export",
                "health": "/health",
            },
        }

    app.include_router(tasks_router)
    app.include_router(audit_router)
    app.include_router(health_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config_loader: ConfigLoader = app.state.config_loader
    uvicorn.run(
        "main:app",
        host=config_loader.get("server.host", "0.0.0.0"),
        port=config_loader.get("server.port", 9000),
        reload=config_loader.get("server.reload", False),
        log_level=str(config_loader.get("logging.level", "info")).lower(),
    )
