"""Docker Engine API access.

Read-only: basehub never creates containers through the API (compose does
that). It only asks whether the daemon answers and what state an
instance's containers are in.

Hosts:
- unix:///path/to/docker.sock
- tcp://host:port (plain HTTP)
"""

from __future__ import annotations

import json
import logging

import httpx

from basehub.config import DockerConfig, get_settings

logger = logging.getLogger(__name__)

_SOCKET_BASE_URL = "http://docker"


def _resolve(host: str) -> tuple[str, httpx.AsyncBaseTransport | None]:
    """Map a Docker host string to (base_url, transport)."""
    if host.startswith("unix://"):
        return _SOCKET_BASE_URL, httpx.AsyncHTTPTransport(uds=host.removeprefix("unix://"))
    if host.startswith("tcp://"):
        return "http://" + host.removeprefix("tcp://"), None
    return host, None


class DockerClient:
    """Lazily opened httpx client bound to the Docker daemon.

    Pass transport to route requests somewhere other than the configured
    host (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        config: DockerConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or get_settings().docker
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def get(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            if self._transport is not None:
                base_url, transport = _SOCKET_BASE_URL, self._transport
            else:
                base_url, transport = _resolve(self._config.host)
            self._client = httpx.AsyncClient(
                base_url=base_url,
                transport=transport,
                timeout=self._config.api_timeout,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


_docker_client: DockerClient | None = None


def get_docker_client() -> DockerClient:
    """Process-wide client shared by every ContainerAPI."""
    global _docker_client
    if _docker_client is None:
        _docker_client = DockerClient()
    return _docker_client


async def close_docker() -> None:
    global _docker_client
    if _docker_client is not None:
        await _docker_client.close()
        _docker_client = None


class ContainerAPI:
    """Container queries used by status reconciliation."""

    def __init__(self, client: DockerClient | None = None) -> None:
        self._docker = client or get_docker_client()

    async def ping(self) -> bool:
        """True when the daemon answers /_ping with 200.

        Transport errors mean "not reachable" and are not raised.
        """
        client = await self._docker.get()
        try:
            resp = await client.get("/_ping")
        except httpx.HTTPError as exc:
            logger.debug("Docker ping failed: %s", exc)
            return False
        return resp.status_code == 200

    async def list(self, filters: dict[str, list[str]] | None = None) -> list[dict]:
        """Containers in any state matching *filters*.

        Raises:
            httpx.HTTPError: Transport failure or non-2xx answer.
        """
        client = await self._docker.get()
        params = {"all": "true"}
        if filters:
            params["filters"] = json.dumps(filters)
        resp = await client.get("/containers/json", params=params)
        resp.raise_for_status()
        return resp.json()

    async def list_by_name(self, pattern: str) -> list[dict]:
        return await self.list({"name": [pattern]})
