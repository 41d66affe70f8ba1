from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from research_copilot.api.routes import chat, research, sessions, stream, webhook
from research_copilot.config import settings
from research_copilot.errors import CopilotError
from research_copilot.services import logger as log_service
from research_copilot.services.store import close_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_service.log_event(
        event_type="app_started",
        message="Research copilot started",
        store_backend=settings.store_backend,
        chat_provider=settings.chat_provider,
    )
    yield
    # Shutdown
    await close_store()


app = FastAPI(
    title="Research Copilot",
    description="Conversational research assistant backed by asynchronous deep-research runs",
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
)


@app.exception_handler(CopilotError)
async def copilot_error_handler(request: Request, exc: CopilotError):
    log_service.log_event(
        event_type="request_failed",
        message=exc.message,
        path=request.url.path,
        error_type=exc.kind,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log_service.logger.exception("Unhandled error on %s", request.url.path)
    body = CopilotError(str(exc) or exc.__class__.__name__).to_response()
    body["type"] = exc.__class__.__name__
    return JSONResponse(status_code=500, content=body)


# Routes
app.include_router(chat.router)
app.include_router(webhook.router)
app.include_router(stream.router)
app.include_router(research.router)
app.include_router(sessions.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "research-copilot", "store_backend": settings.store_backend}
