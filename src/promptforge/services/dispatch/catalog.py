"""Catalog of generation models the engine can dispatch to."""

from dataclasses import dataclass, field
from typing import Any

from promptforge.services.exceptions import ValidationError

IMAGE_SIZES = ("1024x1024", "1792x1024", "1024x1792")
IMAGE_QUALITIES = ("standard", "hd")
IMAGE_STYLES = ("vivid", "natural")
ASPECT_RATIOS = ("16:9", "9:16", "1:1")


@dataclass(frozen=True)
class ProviderModelDescriptor:
    """Static description of one dispatchable model.

    Attributes:
        key: Model key used by clients and stored on jobs (e.g. "hailuo-02")
        name: Display name
        provider_id: Credential / provider family (replicate, openai, stability, runware)
        media_type: "image" or "video"
        provider_model: Model identifier understood by the provider
        credit_cost: Credits reserved per item
        max_concurrency_hint: Upper bound on parallel requests per job
        parameter_schema: Per-model limits and defaults used by the request mapper
    """

    key: str
    name: str
    provider_id: str
    media_type: str
    provider_model: str
    credit_cost: int
    max_concurrency_hint: int
    parameter_schema: dict[str, Any] = field(default_factory=dict)


def _video(
    key: str,
    name: str,
    provider_model: str,
    credit_cost: int,
    *,
    max_duration: int,
    default_duration: int,
    resolutions: tuple[str, ...],
    default_resolution: str,
    accepts: tuple[str, ...],
    default_aspect_ratio: str | None = None,
) -> ProviderModelDescriptor:
    return ProviderModelDescriptor(
        key=key,
        name=name,
        provider_id="replicate",
        media_type="video",
        provider_model=provider_model,
        credit_cost=credit_cost,
        max_concurrency_hint=2,
        parameter_schema={
            "max_duration": max_duration,
            "default_duration": default_duration,
            "resolutions": resolutions,
            "default_resolution": default_resolution,
            "default_aspect_ratio": default_aspect_ratio,
            "accepts": accepts,
        },
    )


MODEL_CATALOG: dict[str, ProviderModelDescriptor] = {
    descriptor.key: descriptor
    for descriptor in (
        ProviderModelDescriptor(
            key="dall-e-3",
            name="DALL-E 3",
            provider_id="openai",
            media_type="image",
            provider_model="dall-e-3",
            credit_cost=5,
            max_concurrency_hint=2,
        ),
        ProviderModelDescriptor(
            key="sdxl",
            name="Stable Diffusion XL",
            provider_id="stability",
            media_type="image",
            provider_model="stable-diffusion-xl-1024-v1-0",
            credit_cost=5,
            max_concurrency_hint=2,
        ),
        ProviderModelDescriptor(
            key="flux-pro",
            name="FLUX.1.1 Pro",
            provider_id="runware",
            media_type="image",
            provider_model="runware:102@1",
            credit_cost=5,
            max_concurrency_hint=4,
        ),
        ProviderModelDescriptor(
            key="flux-dev",
            name="FLUX.1 Dev",
            provider_id="runware",
            media_type="image",
            provider_model="runware:97@2",
            credit_cost=5,
            max_concurrency_hint=4,
        ),
        ProviderModelDescriptor(
            key="flux-schnell",
            name="FLUX.1 Schnell",
            provider_id="runware",
            media_type="image",
            provider_model="runware:100@1",
            credit_cost=5,
            max_concurrency_hint=4,
        ),
        ProviderModelDescriptor(
            key="flux-schnell-replicate",
            name="FLUX Schnell (Replicate)",
            provider_id="replicate",
            media_type="image",
            provider_model="black-forest-labs/flux-schnell",
            credit_cost=5,
            max_concurrency_hint=4,
        ),
        _video(
            "seedance-1-pro",
            "Seedance 1.0 Pro",
            "bytedance/seedance-1-pro",
            5,
            max_duration=41,
            default_duration=6,
            resolutions=("480p", "1080p"),
            default_resolution="1080p",
            accepts=("seed",),
        ),
        _video(
            "hailuo-02",
            "Hailuo 02",
            "minimax/hailuo-02",
            3,
            max_duration=10,
            default_duration=6,
            resolutions=("512p", "768p", "1080p"),
            default_resolution="768p",
            accepts=("aspect_ratio", "seed"),
        ),
        _video(
            "veo-3",
            "Google Veo 3",
            "google/veo-3",
            4,
            max_duration=8,
            default_duration=8,
            resolutions=("720p",),
            default_resolution="720p",
            default_aspect_ratio="16:9",
            accepts=("guidance_scale",),
        ),
        _video(
            "kling-v2.1",
            "Kling AI v2.1",
            "kwaivgi/kling-v2.1-master",
            3,
            max_duration=10,
            default_duration=5,
            resolutions=("720p", "1080p"),
            default_resolution="720p",
            default_aspect_ratio="16:9",
            accepts=("fps",),
        ),
    )
}


def get_descriptor(model_key: str) -> ProviderModelDescriptor:
    """Look up a model by key.

    Raises:
        ValidationError: If the model key is unknown
    """
    descriptor = MODEL_CATALOG.get(model_key)
    if descriptor is None:
        raise ValidationError(
            f"Unknown model: {model_key}",
            details={"model_id": model_key, "known_models": sorted(MODEL_CATALOG)},
        )
    return descriptor
