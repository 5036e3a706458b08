from __future__ import annotations

from fastapi import APIRouter, Depends

from atlas.api.deps import get_model_router
from atlas.model_router import ModelRouter
from atlas.models.schemas import ModelsResponse

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models(model_router: ModelRouter = Depends(get_model_router)):
    """Task to model mapping and the fallback chain."""
    return ModelsResponse(**model_router.catalogue())
