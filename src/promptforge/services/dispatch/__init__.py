"""Provider dispatch: model catalog, routes and the retrying adapter."""

from promptforge.services.dispatch.adapter import DispatchAdapter, build_default_adapter
from promptforge.services.dispatch.catalog import (
    MODEL_CATALOG,
    ProviderModelDescriptor,
    get_descriptor,
)
from promptforge.services.dispatch.normalizers import GenerationResult
from promptforge.services.dispatch.routes import ProviderRoute
from promptforge.services.dispatch.transports import Endpoint, HttpTransport, ReplicateTransport

__all__ = [
    "DispatchAdapter",
    "Endpoint",
    "GenerationResult",
    "HttpTransport",
    "MODEL_CATALOG",
    "ProviderModelDescriptor",
    "ProviderRoute",
    "ReplicateTransport",
    "build_default_adapter",
    "get_descriptor",
]
