from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from stack_alarms.config import RancherConfig
from stack_alarms.models import Container, Service, Stack

logger = structlog.get_logger(__name__)

API_PREFIX = "/v2-beta"
# Upper bound on followed pagination links.
MAX_PAGES = 1000


class PlatformAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PlatformClient(Protocol):
    async def list_stacks(self) -> list[Stack]: ...

    async def get_stack(self, stack_id: str) -> Stack: ...

    async def list_services(self) -> list[Service]: ...

    async def get_service(self, service_id: str) -> Service: ...

    async def get_service_containers(self, service_id: str) -> list[Container]: ...

    def build_link(self, path: str) -> str: ...


# Errors a poll cycle recovers from by skipping the cycle.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (httpx.HTTPError, PlatformAPIError)


class RancherClient:
    """
    Minimal async client for the Rancher v2-beta API.

    Only the read endpoints the alarms daemon needs are covered.
    """

    def __init__(self, client: httpx.AsyncClient, cfg: RancherConfig) -> None:
        self._client = client
        self._cfg = cfg
        self._auth = httpx.BasicAuth(cfg.access_key, cfg.secret_key or "") if cfg.access_key else None

    @property
    def api_base(self) -> str:
        base = f"{self._cfg.url.rstrip('/')}{API_PREFIX}"
        if self._cfg.project_id:
            base = f"{base}/projects/{self._cfg.project_id}"
        return base

    async def _get_json(self, url: str) -> dict[str, Any]:
        resp = await self._client.get(url, auth=self._auth or httpx.USE_CLIENT_DEFAULT, timeout=self._cfg.timeout)
        if resp.status_code >= 400:
            raise PlatformAPIError(
                f"GET {url} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise PlatformAPIError(f"GET {url} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise PlatformAPIError(f"GET {url} returned {type(data).__name__}, expected an object")
        return data

    async def _get_collection(self, path: str) -> list[dict[str, Any]]:
        url: str | None = f"{self.api_base}{path}"
        items: list[dict[str, Any]] = []
        pages = 0
        while url and pages < MAX_PAGES:
            page = await self._get_json(url)
            pages += 1
            data = page.get("data")
            if not isinstance(data, list):
                raise PlatformAPIError(f"GET {url} response has no data list")
            items.extend(x for x in data if isinstance(x, dict))
            pagination = page.get("pagination")
            url = pagination.get("next") if isinstance(pagination, dict) else None
        if url:
            logger.warning("Pagination limit reached", path=path, pages=pages)
        return items

    async def list_stacks(self) -> list[Stack]:
        return [Stack.from_api(x) for x in await self._get_collection("/stacks")]

    async def get_stack(self, stack_id: str) -> Stack:
        return Stack.from_api(await self._get_json(f"{self.api_base}/stacks/{stack_id}"))

    async def list_services(self) -> list[Service]:
        return [Service.from_api(x) for x in await self._get_collection("/services")]

    async def get_service(self, service_id: str) -> Service:
        return Service.from_api(await self._get_json(f"{self.api_base}/services/{service_id}"))

    async def get_service_containers(self, service_id: str) -> list[Container]:
        items = await self._get_collection(f"/services/{service_id}/instances")
        return [Container.from_api(x) for x in items]

    def build_link(self, path: str) -> str:
        base = self._cfg.url.rstrip("/")
        if not path.startswith("/"):
            path = "/" + path
        if self._cfg.project_id:
            return f"{base}/env/{self._cfg.project_id}{path}"
        return f"{base}{path}"


def service_containers_path(service: Service) -> str:
    return f"/apps/stacks/{service.environment_id}/services/{service.id}/containers"
