"""Cloudflare Workers API client.

Performs exactly one remote action per call and returns the interesting
part of the response. It never retries; every failure is raised as a
RemoteError carrying Cloudflare's own error text, which the executor stores
verbatim on the task.

The Workers flow used by the executor:
1. create_worker      -> worker id
2. upload_script      -> version id
3. deploy             -> deployment id (100% of traffic to the version)

plus list_workers, delete_worker, get_subdomain and health_check.
"""

import base64
import logging
from datetime import date
from typing import List, Optional, Protocol

import httpx

from workerfleet.app.core.config import settings
from workerfleet.app.core.errors import NotFoundError, RemoteError
from workerfleet.app.models.account import Account
from workerfleet.app.models.job_config import Binding

logger = logging.getLogger(__name__)

MAIN_MODULE = "worker.js"


class WorkersClient(Protocol):
    """What the executor needs from a remote client. Used as an async context manager."""

    async def __aenter__(self) -> "WorkersClient": ...

    async def __aexit__(self, *exc_info) -> None: ...

    async def create_worker(self, name: str) -> str: ...

    async def upload_script(
        self,
        worker_id: str,
        name: str,
        script: str,
        compatibility_date: Optional[str] = None,
        bindings: Optional[List[Binding]] = None,
    ) -> str: ...

    async def deploy(self, name: str, version_id: str) -> str: ...

    async def list_workers(self) -> List[dict]: ...

    async def delete_worker(self, worker_id: str) -> None: ...

    async def get_subdomain(self) -> str: ...

    async def health_check(self) -> dict: ...


def auth_headers(account: Account) -> dict:
    if account.auth_type == "email-key":
        return {
            "X-Auth-Email": account.auth_email or "",
            "X-Auth-Key": account.auth_key or "",
        }
    return {"Authorization": f"Bearer {account.api_token or ''}"}


class CloudflareClient:
    """One account's view of the Cloudflare v4 API."""

    def __init__(
        self,
        account: Account,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account = account
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.CF_API_BASE_URL,
            headers={"Content-Type": "application/json", **auth_headers(account)},
            timeout=timeout or settings.CF_API_TIMEOUT,
            transport=transport,
        )

    async def __aenter__(self) -> "CloudflareClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self):
        await self._client.aclose()

    @property
    def _scripts_path(self) -> str:
        return f"/accounts/{self.account.cf_account_id}/workers/scripts"

    @property
    def _workers_path(self) -> str:
        return f"/accounts/{self.account.cf_account_id}/workers/workers"

    async def _request(self, method: str, path: str, **kwargs):
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Cloudflare HTTP error on {method} {path}: {e}")
            raise RemoteError(f"Cloudflare request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400 or not body.get("success", False):
            message = _error_message(body) or f"HTTP {resp.status_code}"
            logger.warning(f"Cloudflare API error on {method} {path}: {message}")
            if resp.status_code == 404:
                raise NotFoundError(message)
            raise RemoteError(message)

        return body.get("result")

    async def create_worker(self, name: str) -> str:
        result = await self._request("POST", self._workers_path, json={"name": name})
        return result["id"]

    async def upload_script(
        self,
        worker_id: str,
        name: str,
        script: str,
        compatibility_date: Optional[str] = None,
        bindings: Optional[List[Binding]] = None,
    ) -> str:
        payload = {
            "compatibility_date": compatibility_date or date.today().isoformat(),
            "main_module": MAIN_MODULE,
            "modules": [{
                "name": MAIN_MODULE,
                "content_type": "application/javascript+module",
                "content_base64": base64.b64encode(script.encode("utf-8")).decode("ascii"),
            }],
            "bindings": [b.to_cloudflare() for b in bindings or []],
            "annotations": {"workers/message": f"workerfleet upload of {name}"},
        }
        result = await self._request(
            "POST", f"{self._workers_path}/{worker_id}/versions", json=payload
        )
        return result["id"]

    async def deploy(self, name: str, version_id: str) -> str:
        payload = {
            "strategy": "percentage",
            "versions": [{"version_id": version_id, "percentage": 100}],
        }
        result = await self._request(
            "POST", f"{self._scripts_path}/{name}/deployments", json=payload
        )
        return result["id"]

    async def list_workers(self) -> List[dict]:
        result = await self._request("GET", self._scripts_path)
        return [
            {
                "id": w.get("id"),
                "created_on": w.get("created_on"),
                "modified_on": w.get("modified_on"),
                "etag": w.get("etag"),
            }
            for w in result or []
        ]

    async def delete_worker(self, worker_id: str) -> None:
        await self._request("DELETE", f"{self._scripts_path}/{worker_id}")

    async def get_subdomain(self) -> str:
        if self.account.subdomain:
            return self.account.subdomain
        result = await self._request(
            "GET", f"/accounts/{self.account.cf_account_id}/workers/subdomain"
        )
        return result["subdomain"]

    async def health_check(self) -> dict:
        if self.account.auth_type == "email-key":
            result = await self._request("GET", "/user")
            return {"healthy": True, "auth_type": "email-key", "user": (result or {}).get("email")}
        result = await self._request("GET", "/user/tokens/verify")
        return {"healthy": True, "auth_type": "token", "status": (result or {}).get("status")}


def _error_message(body: dict) -> str:
    errors = body.get("errors") or []
    return "; ".join(
        f"{e.get('code')}: {e.get('message')}" if e.get("code") else str(e.get("message"))
        for e in errors
        if isinstance(e, dict)
    )
