"""Transports execute one provider request for a route.

Each transport exposes ``async send(endpoint, payload) -> raw output`` and raises
the underlying library's exceptions; classification is the route's job.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import replicate


@dataclass(frozen=True)
class Endpoint:
    """Where and how to send a request.

    Attributes:
        target: Replicate model reference or absolute HTTP URL
        credential: Provider API credential
        headers: Extra HTTP headers (HTTP transport only)
    """

    target: str
    credential: str
    headers: dict[str, str] = field(default_factory=dict)


class Transport(Protocol):
    async def send(self, endpoint: Endpoint, payload: Any) -> Any: ...


class ReplicateTransport:
    """Runs models through the Replicate SDK.

    The SDK is synchronous, so each call runs in the default thread pool.
    """

    def __init__(self):
        self._clients: dict[str, replicate.Client] = {}

    def _client(self, api_token: str) -> replicate.Client:
        client = self._clients.get(api_token)
        if client is None:
            client = replicate.Client(api_token=api_token)
            self._clients[api_token] = client
        return client

    async def send(self, endpoint: Endpoint, payload: Any) -> Any:
        client = self._client(endpoint.credential)
        return await asyncio.to_thread(client.run, endpoint.target, input=payload)


class HttpTransport:
    """JSON POST over httpx.

    Args:
        transport: Optional httpx transport (httpx.MockTransport in tests)
        timeout: Socket-level timeout in seconds; the adapter enforces the overall deadline
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 60.0):
        self._transport = transport
        self._timeout = timeout

    async def send(self, endpoint: Endpoint, payload: Any) -> Any:
        headers = {
            "Authorization": f"Bearer {endpoint.credential}",
            "Content-Type": "application/json",
            **endpoint.headers,
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(endpoint.target, json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
