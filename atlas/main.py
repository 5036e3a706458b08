from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from atlas.agents.orchestrator import ResearchOrchestrator
from atlas.api.routes import models, reports, research, sessions
from atlas.config import settings
from atlas.model_router import ModelRouter
from atlas.services import logger as log_service
from atlas.services.report_store import ReportStore
from atlas.services.session_store import InMemorySessionStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    session_store = InMemorySessionStore(settings.session_store_path)
    await session_store.start()
    report_store = ReportStore(settings.reports_dir)
    app.state.session_store = session_store
    app.state.report_store = report_store
    app.state.model_router = ModelRouter()
    app.state.orchestrator = ResearchOrchestrator(store=session_store, report_store=report_store)
    log_service.log_event("startup", "Atlas research service started")
    yield
    # Shutdown
    await app.state.orchestrator.shutdown()
    await session_store.stop()
    log_service.log_event("shutdown", "Atlas research service stopped")


app = FastAPI(
    title="Atlas",
    description="Multi-agent deep research service",
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

# Routes
app.include_router(research.router)
app.include_router(sessions.router)
app.include_router(reports.router)
app.include_router(models.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "atlas"}
