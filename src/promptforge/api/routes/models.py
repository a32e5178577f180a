"""Model catalog API endpoint (GET /api/models)."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from promptforge.api.dependencies import get_adapter
from promptforge.services.dispatch.adapter import DispatchAdapter

router = APIRouter(prefix="/api/models", tags=["models"])


class ModelView(BaseModel):
    """A dispatchable generation model."""

    key: str = Field(..., description="Value for model_id when creating a job")
    name: str
    provider: str
    media_type: str = Field(..., description="image or video")
    credit_cost: int = Field(..., description="Credits charged per succeeded item")
    available: bool = Field(..., description="False when the provider is not configured")


@router.get("", response_model=list[ModelView])
async def list_models(adapter: DispatchAdapter = Depends(get_adapter)) -> list[ModelView]:
    return [
        ModelView(
            key=descriptor.key,
            name=descriptor.name,
            provider=descriptor.provider_id,
            media_type=descriptor.media_type,
            credit_cost=descriptor.credit_cost,
            available=adapter.is_available(descriptor.key),
        )
        for descriptor in adapter.descriptors()
    ]
