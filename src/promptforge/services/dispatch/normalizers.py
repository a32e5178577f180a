"""Response normalizers: provider output -> GenerationResult.

Every route has exactly one normalizer; callers only ever see GenerationResult.
"""

from dataclasses import dataclass, field
from typing import Any

from promptforge.services.dispatch.catalog import ProviderModelDescriptor
from promptforge.services.exceptions import PermanentProviderError

ASSET_KEYS = ("video", "url", "mp4", "image", "output")
THUMBNAIL_KEYS = ("thumbnail", "preview")


@dataclass(frozen=True)
class GenerationResult:
    """Canonical output of a successful dispatch."""

    asset_url: str
    thumbnail_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _url_of(value: Any) -> str | None:
    """Extract a URL from a string or an SDK file object exposing .url."""
    if isinstance(value, str):
        return value or None
    url = getattr(value, "url", None)
    if url:
        return str(url)
    return None


def _first_url(mapping: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        url = _url_of(mapping.get(key))
        if url:
            return url
    return None


def _base_metadata(descriptor: ProviderModelDescriptor) -> dict[str, Any]:
    return {
        "model": descriptor.provider_model,
        "provider": descriptor.provider_id,
        "media_type": descriptor.media_type,
    }


def _missing(descriptor: ProviderModelDescriptor, output: Any) -> PermanentProviderError:
    return PermanentProviderError(
        f"No asset URL in {descriptor.provider_id} response for {descriptor.key} "
        f"(got {type(output).__name__})"
    )


def normalize_replicate_output(
    descriptor: ProviderModelDescriptor, output: Any, request: dict[str, Any]
) -> GenerationResult:
    """Normalize Replicate run() output.

    Accepted shapes:
        - "https://..." (bare URL)
        - ["https://asset", "https://thumbnail"] (first asset, optional thumbnail)
        - {"video": ..., "thumbnail": ...} and the url/mp4/image/output/preview variants
        - FileOutput objects (anything with a .url attribute), alone or in the above
    """
    asset_url = thumbnail_url = None

    if isinstance(output, (list, tuple)):
        if output:
            asset_url = _url_of(output[0])
        if len(output) > 1:
            thumbnail_url = _url_of(output[1])
    elif isinstance(output, dict):
        asset_url = _first_url(output, ASSET_KEYS)
        thumbnail_url = _first_url(output, THUMBNAIL_KEYS)
    else:
        asset_url = _url_of(output)

    if not asset_url:
        raise _missing(descriptor, output)

    metadata = _base_metadata(descriptor)
    for key in ("duration", "resolution", "aspect_ratio", "fps", "seed"):
        if key in request:
            metadata[key] = request[key]

    return GenerationResult(asset_url=asset_url, thumbnail_url=thumbnail_url, metadata=metadata)


def normalize_openai_response(
    descriptor: ProviderModelDescriptor, body: Any, request: dict[str, Any]
) -> GenerationResult:
    """Normalize an images/generations body: {"data": [{"url", "revised_prompt"}]}."""
    data = body.get("data") if isinstance(body, dict) else None
    image = data[0] if data else {}
    asset_url = _url_of(image.get("url"))
    if not asset_url:
        raise _missing(descriptor, body)

    metadata = _base_metadata(descriptor)
    metadata.update(size=request["size"], quality=request["quality"], style=request["style"])
    if image.get("revised_prompt"):
        metadata["revised_prompt"] = image["revised_prompt"]

    return GenerationResult(asset_url=asset_url, metadata=metadata)


def normalize_stability_response(
    descriptor: ProviderModelDescriptor, body: Any, request: dict[str, Any]
) -> GenerationResult:
    """Normalize a text-to-image body: {"artifacts": [{"base64", "seed"}]}.

    Stability returns image bytes inline, so the asset is a data: URL.
    """
    artifacts = body.get("artifacts") if isinstance(body, dict) else None
    artifact = artifacts[0] if artifacts else {}
    if not artifact.get("base64"):
        raise _missing(descriptor, body)

    metadata = _base_metadata(descriptor)
    metadata.update(width=request["width"], height=request["height"], steps=request["steps"])
    if artifact.get("seed") is not None:
        metadata["seed"] = artifact["seed"]

    return GenerationResult(
        asset_url=f"data:image/png;base64,{artifact['base64']}", metadata=metadata
    )


def normalize_runware_response(
    descriptor: ProviderModelDescriptor, body: Any, request: list[dict[str, Any]]
) -> GenerationResult:
    """Normalize an images/inference body: {"data": [{"imageURL", "cost", "taskUUID"}]}."""
    data = body.get("data") if isinstance(body, dict) else None
    image = data[0] if data else {}
    asset_url = _url_of(image.get("imageURL"))
    if not asset_url:
        raise _missing(descriptor, body)

    task = request[0]
    metadata = _base_metadata(descriptor)
    metadata.update(
        width=task["width"],
        height=task["height"],
        steps=task["steps"],
        cfg_scale=task["CFGScale"],
        task_uuid=image.get("taskUUID", task["taskUUID"]),
    )
    if image.get("cost") is not None:
        metadata["cost"] = image["cost"]

    return GenerationResult(asset_url=asset_url, metadata=metadata)
