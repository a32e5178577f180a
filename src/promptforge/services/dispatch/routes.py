"""Provider routes: the binding of each catalog model to its request pipeline."""

from dataclasses import dataclass
from typing import Any, Callable

from promptforge.services.dispatch.catalog import MODEL_CATALOG, ProviderModelDescriptor
from promptforge.services.dispatch.classifier import classify_http_error, classify_replicate_error
from promptforge.services.dispatch.mappers import (
    map_openai_request,
    map_replicate_image_request,
    map_runware_request,
    map_stability_request,
    map_video_request,
)
from promptforge.services.dispatch.normalizers import (
    GenerationResult,
    normalize_openai_response,
    normalize_replicate_output,
    normalize_runware_response,
    normalize_stability_response,
)
from promptforge.services.dispatch.transports import Endpoint
from promptforge.services.exceptions import ProviderError

OPENAI_IMAGES_URL = "https://api.openai.com/v1/images/generations"
STABILITY_BASE_URL = "https://api.stability.ai/v1"
RUNWARE_INFERENCE_URL = "https://api.runware.ai/v1/images/inference"


@dataclass(frozen=True)
class ProviderRoute:
    """Registry entry for one model key."""

    descriptor: ProviderModelDescriptor
    transport: str
    endpoint_builder: Callable[[ProviderModelDescriptor, str], Endpoint]
    request_mapper: Callable[[ProviderModelDescriptor, str, dict[str, Any]], Any]
    response_normalizer: Callable[[ProviderModelDescriptor, Any, Any], GenerationResult]
    error_classifier: Callable[[Exception], ProviderError]


def replicate_endpoint(descriptor: ProviderModelDescriptor, credential: str) -> Endpoint:
    return Endpoint(target=descriptor.provider_model, credential=credential)


def openai_endpoint(descriptor: ProviderModelDescriptor, credential: str) -> Endpoint:
    return Endpoint(target=OPENAI_IMAGES_URL, credential=credential)


def stability_endpoint(descriptor: ProviderModelDescriptor, credential: str) -> Endpoint:
    return Endpoint(
        target=f"{STABILITY_BASE_URL}/generation/{descriptor.provider_model}/text-to-image",
        credential=credential,
        headers={"Accept": "application/json"},
    )


def runware_endpoint(descriptor: ProviderModelDescriptor, credential: str) -> Endpoint:
    return Endpoint(target=RUNWARE_INFERENCE_URL, credential=credential)


def route_for(descriptor: ProviderModelDescriptor) -> ProviderRoute:
    """Build the route for a catalog descriptor."""
    if descriptor.provider_id == "replicate":
        mapper = map_video_request if descriptor.media_type == "video" else map_replicate_image_request
        return ProviderRoute(
            descriptor=descriptor,
            transport="replicate",
            endpoint_builder=replicate_endpoint,
            request_mapper=mapper,
            response_normalizer=normalize_replicate_output,
            error_classifier=classify_replicate_error,
        )

    http_pipelines = {
        "openai": (openai_endpoint, map_openai_request, normalize_openai_response),
        "stability": (stability_endpoint, map_stability_request, normalize_stability_response),
        "runware": (runware_endpoint, map_runware_request, normalize_runware_response),
    }
    if descriptor.provider_id not in http_pipelines:
        raise ValueError(f"No route for provider {descriptor.provider_id}")

    endpoint_builder, mapper, normalizer = http_pipelines[descriptor.provider_id]
    return ProviderRoute(
        descriptor=descriptor,
        transport="http",
        endpoint_builder=endpoint_builder,
        request_mapper=mapper,
        response_normalizer=normalizer,
        error_classifier=classify_http_error,
    )


def default_routes() -> list[ProviderRoute]:
    """Routes for every model in the catalog."""
    return [route_for(descriptor) for descriptor in MODEL_CATALOG.values()]
