"""Management API wrapper: cluster CRUD, tokens, kubeconfig generation, version metadata."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from hosted_e2e.errors import ClusterNotFound, ManagementAPIError, NotFound, SettingNotFound, SynchronousRejection
from hosted_e2e.models import ClusterResource, ClusterSpec, Token, spec_to_api

log = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 60.0


def _error_message(response: httpx.Response) -> tuple[str, str | None]:
    """Extract (message, code) from an API error document, falling back to the raw body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or response.text), body.get("code")
    return response.text, None


class ManagementClient:
    """Synchronous client for the cluster-management REST API.

    Validation failures (4xx) surface as ``SynchronousRejection`` so tests can
    tell them apart from asynchronous convergence timeouts.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        verify: bool = True,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._verify = verify
        self._timeout = timeout
        self._transport = transport
        self._http = httpx.Client(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> ManagementClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def with_token(self, token: str) -> ManagementClient:
        """Return a new client sharing this one's endpoint and transport settings, using ``token``."""
        return ManagementClient(
            self._base_url,
            token,
            verify=self._verify,
            timeout=self._timeout,
            transport=self._transport,
        )

    def _request(
        self, method: str, path: str, *, not_found: type[NotFound] = NotFound, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.HTTPError as err:
            log.error("management_api_unreachable", method=method, path=path, error=str(err))
            msg = f"{method} {path} failed: {err}"
            raise ManagementAPIError(msg) from err

        if response.is_success:
            return response

        message, code = _error_message(response)
        log.error(
            "management_api_error",
            method=method,
            path=path,
            status=response.status_code,
            code=code,
            message=message,
        )
        if response.status_code == 404:
            raise not_found(message, status_code=404)
        if 400 <= response.status_code < 500:
            raise SynchronousRejection(message, status_code=response.status_code, code=code)
        msg = f"{method} {path} returned {response.status_code}: {message}"
        raise ManagementAPIError(msg, status_code=response.status_code)

    # --- clusters ---

    def create_cluster(self, name: str, provider: str, spec: ClusterSpec) -> ClusterResource:
        """Submit a new hosted cluster and return the resource as persisted by the server."""
        body = {"type": "cluster", "name": name, f"{provider}Config": spec_to_api(provider, spec)}
        log.info("creating_cluster", cluster=name, provider=provider)
        response = self._request("POST", "/clusters", json=body)
        return ClusterResource.from_api(response.json())

    def update_cluster(self, cluster: ClusterResource) -> ClusterResource:
        """Replace the cluster's desired configuration; returns the accepted (echoed) resource."""
        response = self._request("PUT", f"/clusters/{cluster.id}", json=cluster.to_api(), not_found=ClusterNotFound)
        return ClusterResource.from_api(response.json())

    def get_cluster(self, cluster_id: str) -> ClusterResource:
        response = self._request("GET", f"/clusters/{cluster_id}", not_found=ClusterNotFound)
        return ClusterResource.from_api(response.json())

    def delete_cluster(self, cluster_id: str) -> None:
        log.info("deleting_cluster", cluster_id=cluster_id)
        self._request("DELETE", f"/clusters/{cluster_id}", not_found=ClusterNotFound)

    def generate_kubeconfig(self, cluster_id: str) -> str:
        response = self._request(
            "POST", f"/clusters/{cluster_id}", params={"action": "generateKubeconfig"}, not_found=ClusterNotFound
        )
        return str(response.json()["config"])

    # --- auth and metadata ---

    def create_token(self, description: str = "hosted-e2e") -> Token:
        response = self._request("POST", "/tokens", json={"type": "token", "description": description})
        return Token.model_validate(response.json())

    def is_connected(self) -> bool:
        try:
            self._request("GET", "/")
        except (ManagementAPIError, SynchronousRejection):
            return False
        return True

    def get_setting(self, name: str) -> str:
        response = self._request("GET", f"/settings/{name}", not_found=SettingNotFound)
        body = response.json()
        return str(body.get("value") or body.get("default") or "")

    def list_kubernetes_versions(self, provider: str, **params: str) -> list[str]:
        """List Kubernetes versions the provider offers, e.g. for a region or credential."""
        response = self._request("GET", f"/meta/{provider}Versions", params={k: v for k, v in params.items() if v})
        body = response.json()
        if isinstance(body, dict):
            body = body.get("data", [])
        return [str(v) for v in body]
