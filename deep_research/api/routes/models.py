from __future__ import annotations

from fastapi import APIRouter, Depends

from deep_research.api.deps import get_registry
from deep_research.models.schemas import ModelInfo, ModelsResponse
from deep_research.services.model_registry import ModelRegistry

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models(registry: ModelRegistry = Depends(get_registry)):
    """List the models a research run can use."""
    return ModelsResponse(
        default=registry.default_key,
        models=[
            ModelInfo(
                key=config.key,
                id=config.id,
                name=config.name,
                description=config.description,
                provider=config.provider,
                context_length=config.context_length,
                capabilities=list(config.capabilities),
            )
            for config in registry.available_models()
        ],
    )
