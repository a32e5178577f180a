"""Request mappers: (descriptor, prompt, settings) -> provider request payload.

Out-of-range or unknown settings are clamped or replaced by the model default,
never rejected; a batch of a hundred prompts should not fail on a typo in one
duration field.
"""

from typing import Any
from uuid import uuid4

from promptforge.services.dispatch.catalog import (
    ASPECT_RATIOS,
    IMAGE_QUALITIES,
    IMAGE_SIZES,
    IMAGE_STYLES,
    ProviderModelDescriptor,
)

FPS_RANGE = (8, 30)
GUIDANCE_SCALE_RANGE = (1.0, 20.0)

_SIZE_ASPECT_RATIOS = {"1024x1024": "1:1", "1792x1024": "16:9", "1024x1792": "9:16"}


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _clamp(value, low, high):
    return max(low, min(value, high))


def _choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    return value if value in allowed else default


def map_video_request(
    descriptor: ProviderModelDescriptor, prompt: str, settings: dict[str, Any]
) -> dict[str, Any]:
    """Build Replicate input for a video model.

    Duration is clamped to [1, max_duration] (model default when missing or not a
    number), resolution is coerced into the model's enumeration, and optional
    parameters are passed only where the model accepts them.
    """
    schema = descriptor.parameter_schema
    accepts = schema["accepts"]

    duration = _as_int(settings.get("duration"))
    if duration is None:
        duration = schema["default_duration"]

    request: dict[str, Any] = {
        "prompt": prompt,
        "duration": _clamp(duration, 1, schema["max_duration"]),
        "resolution": _choice(
            settings.get("resolution"), schema["resolutions"], schema["default_resolution"]
        ),
    }

    if schema["default_aspect_ratio"] is not None:
        request["aspect_ratio"] = _choice(
            settings.get("aspect_ratio"), ASPECT_RATIOS, schema["default_aspect_ratio"]
        )
    elif "aspect_ratio" in accepts and settings.get("aspect_ratio") in ASPECT_RATIOS:
        request["aspect_ratio"] = settings["aspect_ratio"]

    seed = _as_int(settings.get("seed"))
    if "seed" in accepts and seed:
        request["seed"] = seed

    fps = _as_int(settings.get("fps"))
    if "fps" in accepts and fps:
        request["fps"] = _clamp(fps, *FPS_RANGE)

    guidance_scale = _as_float(settings.get("guidance_scale"))
    if "guidance_scale" in accepts and guidance_scale:
        request["guidance_scale"] = _clamp(guidance_scale, *GUIDANCE_SCALE_RANGE)

    return request


def image_options(settings: dict[str, Any]) -> tuple[str, str, str]:
    """Coerce size, quality and style into the supported enumerations."""
    return (
        _choice(settings.get("size"), IMAGE_SIZES, IMAGE_SIZES[0]),
        _choice(settings.get("quality"), IMAGE_QUALITIES, IMAGE_QUALITIES[0]),
        _choice(settings.get("style"), IMAGE_STYLES, IMAGE_STYLES[0]),
    )


def parse_size(size: str) -> tuple[int, int]:
    width, height = size.split("x")
    return int(width), int(height)


def map_openai_request(
    descriptor: ProviderModelDescriptor, prompt: str, settings: dict[str, Any]
) -> dict[str, Any]:
    size, quality, style = image_options(settings)
    return {
        "model": descriptor.provider_model,
        "prompt": prompt,
        "n": 1,
        "size": size,
        "quality": quality,
        "style": style,
    }


def map_stability_request(
    descriptor: ProviderModelDescriptor, prompt: str, settings: dict[str, Any]
) -> dict[str, Any]:
    size, quality, style = image_options(settings)
    width, height = parse_size(size)
    return {
        "text_prompts": [{"text": prompt, "weight": 1}],
        "cfg_scale": 7,
        "width": width,
        "height": height,
        "steps": 50 if quality == "hd" else 30,
        "samples": 1,
        "style_preset": "photographic" if style == "natural" else "cinematic",
    }


def map_runware_request(
    descriptor: ProviderModelDescriptor, prompt: str, settings: dict[str, Any]
) -> list[dict[str, Any]]:
    """Runware takes a list of tasks; one image inference task per item."""
    size, quality, _ = image_options(settings)
    width, height = parse_size(size)
    return [
        {
            "taskType": "imageInference",
            "taskUUID": str(uuid4()),
            "positivePrompt": prompt,
            "model": descriptor.provider_model,
            "width": width,
            "height": height,
            "steps": 40 if quality == "hd" else 25,
            "CFGScale": 7.5,
            "numberResults": 1,
            "includeCost": True,
        }
    ]


def map_replicate_image_request(
    descriptor: ProviderModelDescriptor, prompt: str, settings: dict[str, Any]
) -> dict[str, Any]:
    size, _, _ = image_options(settings)
    request: dict[str, Any] = {"prompt": prompt, "aspect_ratio": _SIZE_ASPECT_RATIOS[size]}
    seed = _as_int(settings.get("seed"))
    if seed:
        request["seed"] = seed
    return request
