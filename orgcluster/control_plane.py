from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Callable
from urllib.parse import quote

import httpx

from orgcluster.settings import DEFAULT_BASE_URL, Settings

logger = logging.getLogger(__name__)

MEDIA_TYPE = "application/vnd.atlas.2023-01-01+json"
CLUSTER_STATE_IDLE = "IDLE"
CLUSTER_STATE_DELETED = "DELETED"
OPEN_CIDR_BLOCK = "0.0.0.0/0"

ERROR_CODE_NOT_CONFIGURED = "NOT_CONFIGURED"
ERROR_CODE_REQUEST_FAILED = "REQUEST_FAILED"
ERROR_CODE_API_ERROR = "API_ERROR"
ERROR_CODE_TIMEOUT = "TIMEOUT"
ERROR_CODE_CLUSTER_DELETED = "CLUSTER_DELETED"
ERROR_CODE_USER_ALREADY_EXISTS = "USER_ALREADY_EXISTS"


@dataclass(frozen=True)
class ApiError:
    status: int
    code: str
    detail: str

    @property
    def not_found(self) -> bool:
        return self.status == 404


@dataclass(frozen=True)
class ApiResult:
    success: bool
    data: Any = None
    error: ApiError | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "ApiResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, *, status: int, code: str, detail: str) -> "ApiResult":
        return cls(success=False, error=ApiError(status=status, code=code, detail=detail))

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None

    @property
    def error_detail(self) -> str | None:
        return self.error.detail if self.error else None


class ControlPlaneClient:
    """Typed client for the infrastructure control plane's administrative API.

    Requests are authenticated with HTTP digest auth using an API key pair.
    Every operation returns an ``ApiResult``; transport failures are folded
    into a ``REQUEST_FAILED`` error instead of being raised.
    """

    def __init__(
        self,
        *,
        public_key: str = "",
        private_key: str = "",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._configured = bool(public_key and private_key)
        self._sleep = sleep
        self._clock = clock
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=httpx.DigestAuth(public_key, private_key) if self._configured else None,
            headers={"Accept": MEDIA_TYPE},
            timeout=timeout,
            transport=transport,
        )
        if not self._configured:
            logger.warning("Control plane API keys are not configured; all calls will fail")

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "ControlPlaneClient":
        return cls(
            public_key=settings.control_plane_public_key,
            private_key=settings.control_plane_private_key,
            base_url=settings.control_plane_base_url,
            **kwargs,
        )

    def is_configured(self) -> bool:
        return self._configured

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ControlPlaneClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> ApiResult:
        if not self._configured:
            return ApiResult.fail(
                status=401,
                code=ERROR_CODE_NOT_CONFIGURED,
                detail="Control plane API credentials not configured",
            )
        logger.debug("Control plane request: %s %s", method, path)
        try:
            response = self._http.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Control plane request failed: %s %s error=%s", method, path, exc)
            return ApiResult.fail(status=500, code=ERROR_CODE_REQUEST_FAILED, detail=str(exc) or type(exc).__name__)
        return self._handle_response(method, path, response)

    @staticmethod
    def _handle_response(method: str, path: str, response: httpx.Response) -> ApiResult:
        payload: Any = None
        if "json" in response.headers.get("content-type", ""):
            try:
                payload = response.json()
            except ValueError:
                logger.warning("Control plane returned invalid JSON: %s %s", method, path)

        if response.is_error:
            body = payload if isinstance(payload, dict) else {}
            status = body.get("error") if isinstance(body.get("error"), int) else response.status_code
            error = ApiResult.fail(
                status=status,
                code=str(body.get("errorCode") or ERROR_CODE_API_ERROR),
                detail=str(body.get("detail") or body.get("reason") or response.reason_phrase),
            )
            logger.info(
                "Control plane call rejected: %s %s status=%s code=%s",
                method,
                path,
                error.error.status,
                error.error.code,
            )
            return error

        logger.debug("Control plane call succeeded: %s %s status=%s", method, path, response.status_code)
        return ApiResult.ok(payload)

    # Projects

    def create_project(self, *, name: str, org_id: str) -> ApiResult:
        return self._request("POST", "/groups", json={"name": name, "orgId": org_id})

    def get_project(self, project_id: str) -> ApiResult:
        return self._request("GET", f"/groups/{project_id}")

    def get_project_by_name(self, *, org_id: str, name: str) -> ApiResult:
        """Return the project named ``name`` within ``org_id``, or ``None`` as data."""
        result = self._request("GET", f"/orgs/{org_id}/groups", params={"itemsPerPage": 500})
        if not result.success:
            return result
        projects = (result.data or {}).get("results") or []
        match = next((project for project in projects if project.get("name") == name), None)
        return ApiResult.ok(match)

    def delete_project(self, project_id: str) -> ApiResult:
        return self._request("DELETE", f"/groups/{project_id}")

    # Clusters

    def create_cluster(
        self,
        project_id: str,
        *,
        name: str,
        provider: str,
        region: str,
        instance_size: str = "M0",
    ) -> ApiResult:
        # Shared-tier clusters use the legacy providerSettings shape.
        return self._request(
            "POST",
            f"/groups/{project_id}/clusters",
            json={
                "name": name,
                "providerSettings": {
                    "providerName": "TENANT",
                    "backingProviderName": provider,
                    "regionName": region,
                    "instanceSizeName": instance_size,
                },
            },
        )

    def list_clusters(self, project_id: str) -> ApiResult:
        result = self._request("GET", f"/groups/{project_id}/clusters")
        if not result.success:
            return result
        return ApiResult.ok((result.data or {}).get("results") or [])

    def get_cluster(self, project_id: str, cluster_name: str) -> ApiResult:
        return self._request("GET", f"/groups/{project_id}/clusters/{cluster_name}")

    def delete_cluster(self, project_id: str, cluster_name: str) -> ApiResult:
        return self._request("DELETE", f"/groups/{project_id}/clusters/{cluster_name}")

    def wait_for_cluster_ready(
        self,
        project_id: str,
        cluster_name: str,
        *,
        timeout_sec: float = 60,
        poll_interval_sec: float = 5,
    ) -> ApiResult:
        """Poll the cluster until it reports IDLE or the deadline passes."""
        deadline = self._clock() + timeout_sec
        while True:
            result = self.get_cluster(project_id, cluster_name)
            if not result.success:
                return result
            state = (result.data or {}).get("stateName")
            if state == CLUSTER_STATE_IDLE:
                return result
            if state == CLUSTER_STATE_DELETED:
                return ApiResult.fail(status=404, code=ERROR_CODE_CLUSTER_DELETED, detail="Cluster was deleted")
            if self._clock() + poll_interval_sec > deadline:
                break
            logger.debug(
                "Waiting for cluster project_id=%s cluster=%s state=%s",
                project_id,
                cluster_name,
                state,
            )
            self._sleep(poll_interval_sec)
        return ApiResult.fail(
            status=408,
            code=ERROR_CODE_TIMEOUT,
            detail=f"Cluster {cluster_name} did not become ready within {timeout_sec}s",
        )

    # Database users

    def create_database_user(
        self,
        project_id: str,
        *,
        username: str,
        password: str,
        roles: list[dict[str, str]],
        scopes: list[dict[str, str]],
    ) -> ApiResult:
        return self._request(
            "POST",
            f"/groups/{project_id}/databaseUsers",
            json={
                "username": username,
                "password": password,
                # SCRAM users authenticate against the admin database.
                "databaseName": "admin",
                "roles": roles,
                "scopes": scopes,
            },
        )

    def get_database_user(self, project_id: str, username: str) -> ApiResult:
        return self._request("GET", f"/groups/{project_id}/databaseUsers/admin/{quote(username, safe='')}")

    def update_database_user(
        self,
        project_id: str,
        *,
        username: str,
        password: str,
        roles: list[dict[str, str]],
        scopes: list[dict[str, str]],
    ) -> ApiResult:
        return self._request(
            "PATCH",
            f"/groups/{project_id}/databaseUsers/admin/{quote(username, safe='')}",
            json={"password": password, "roles": roles, "scopes": scopes},
        )

    def delete_database_user(self, project_id: str, username: str) -> ApiResult:
        return self._request("DELETE", f"/groups/{project_id}/databaseUsers/admin/{quote(username, safe='')}")

    # Network access

    def add_access_list_entries(self, project_id: str, entries: list[dict[str, str]]) -> ApiResult:
        return self._request("POST", f"/groups/{project_id}/accessList", json=entries)

    def allow_all_ips(self, project_id: str, *, comment: str) -> ApiResult:
        """Open the project to every address. Insecure; development convenience only."""
        return self.add_access_list_entries(project_id, [{"cidrBlock": OPEN_CIDR_BLOCK, "comment": comment}])

    # Console invitations

    def create_invitation(self, org_id: str, *, email: str, project_id: str, roles: list[str]) -> ApiResult:
        return self._request(
            "POST",
            f"/orgs/{org_id}/invitations",
            json={
                "username": email,
                # No organisation-level roles; access is scoped to the one project.
                "roles": [],
                "groupRoleAssignments": [{"groupId": project_id, "roles": roles}],
            },
        )

    def get_invitation(self, org_id: str, invitation_id: str) -> ApiResult:
        return self._request("GET", f"/orgs/{org_id}/invitations/{invitation_id}")

    def delete_invitation(self, org_id: str, invitation_id: str) -> ApiResult:
        return self._request("DELETE", f"/orgs/{org_id}/invitations/{invitation_id}")

    # Consumption metrics

    def get_cluster_measurements(
        self,
        project_id: str,
        cluster_name: str,
        *,
        granularity: str = "PT1H",
        period: str = "P1D",
    ) -> ApiResult:
        return self._request(
            "GET",
            f"/groups/{project_id}/clusters/{cluster_name}/measurements",
            params={"granularity": granularity, "period": period},
        )
