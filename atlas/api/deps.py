from __future__ import annotations

from fastapi import Request

from atlas.agents.orchestrator import ResearchOrchestrator
from atlas.model_router import ModelRouter
from atlas.services.report_store import ReportStore
from atlas.services.session_store import SessionStore


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_report_store(request: Request) -> ReportStore:
    return request.app.state.report_store


def get_orchestrator(request: Request) -> ResearchOrchestrator:
    return request.app.state.orchestrator


def get_model_router(request: Request) -> ModelRouter:
    return request.app.state.model_router
