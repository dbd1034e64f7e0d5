"""Neon API client for the catalog the proxy selection is made from.

Reads (organizations, projects, branches, databases, roles, endpoints,
role passwords) are idempotent and retried on transient network failures.
The single write, restoring a branch from its parent, is destructive and is
never retried.
"""

from __future__ import annotations

import logging
from typing import Any, cast
from urllib.parse import quote

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from neonlocal.domains.catalog.domain.models import (
    PERSONAL_ACCOUNT_NAME,
    Branch,
    Database,
    Endpoint,
    Organization,
    Project,
    Role,
)
from neonlocal.shared.core.errors import (
    CatalogError,
    CatalogUnavailable,
    OperationTimeout,
    Unauthenticated,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://console.neon.tech/api/v2"


def _seg(value: str) -> str:
    return quote(value, safe="")


def _items(data: Any, key: str) -> list[dict[str, Any]]:
    """Accept either a bare list or ``{key: [...]}``."""
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        return []
    return [cast(dict[str, Any], item) for item in data if isinstance(item, dict)]


class NeonApiClient:
    """Bearer-authenticated client for the Neon v2 API.

    Example:
        client = NeonApiClient(api_key="...")
        branches = client.list_branches("proj-123")
    """

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_wait: Any | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._api_key = api_key
        self._max_attempts = max(1, max_attempts)
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise Unauthenticated()
        return {"Authorization": f"Bearer {self._api_key}"}

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self._session.request(
                method,
                url,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            raise OperationTimeout(f"Neon API did not answer within {self.timeout:g}s.") from e
        except requests.ConnectionError as e:
            raise CatalogUnavailable() from e
        except requests.RequestException as e:
            raise CatalogError(f"Request failed: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: requests.Response) -> Any:
        if response.status_code == 401:
            raise Unauthenticated("The Neon API rejected your credentials. Please sign in again.")
        if response.status_code >= 400:
            detail = ""
            try:
                body = response.json()
                if isinstance(body, dict):
                    detail = str(body.get("message") or "")
            except ValueError:
                detail = response.text[:200]
            raise CatalogError(
                f"Neon API error {response.status_code}: {detail or response.reason}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise CatalogError(f"Invalid JSON response: {e}") from e

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type((OperationTimeout, CatalogUnavailable)),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._request("GET", path, params=params)
        raise AssertionError("unreachable")  # pragma: no cover

    def list_orgs(self) -> list[Organization]:
        """Organizations of the signed-in user, personal account first."""
        data = self._get("/users/me/organizations")
        orgs = [Organization.from_dict(item) for item in _items(data, "organizations")]
        return [Organization(id="", name=PERSONAL_ACCOUNT_NAME), *orgs]

    def list_projects(self, org_id: str | None = None) -> list[Project]:
        # The personal account is addressed by omitting org_id
        params = {"org_id": org_id} if org_id else None
        data = self._get("/projects", params=params)
        return [Project.from_dict(item) for item in _items(data, "projects")]

    def list_branches(self, project_id: str) -> list[Branch]:
        data = self._get(f"/projects/{_seg(project_id)}/branches")
        return [Branch.from_dict(item) for item in _items(data, "branches")]

    def get_branch(self, project_id: str, branch_id: str) -> Branch:
        data = self._get(f"/projects/{_seg(project_id)}/branches/{_seg(branch_id)}")
        branch = data.get("branch", data) if isinstance(data, dict) else {}
        return Branch.from_dict(branch)

    def list_databases(self, project_id: str, branch_id: str) -> list[Database]:
        data = self._get(f"/projects/{_seg(project_id)}/branches/{_seg(branch_id)}/databases")
        return [Database.from_dict(item) for item in _items(data, "databases")]

    def list_roles(self, project_id: str, branch_id: str) -> list[Role]:
        data = self._get(f"/projects/{_seg(project_id)}/branches/{_seg(branch_id)}/roles")
        return [Role.from_dict(item) for item in _items(data, "roles")]

    def get_branch_endpoint(self, project_id: str, branch_id: str) -> Endpoint:
        """The branch's read-write compute endpoint."""
        data = self._get(f"/projects/{_seg(project_id)}/branches/{_seg(branch_id)}/endpoints")
        endpoints = [Endpoint.from_dict(item) for item in _items(data, "endpoints")]
        if not endpoints:
            raise CatalogError(f"Branch '{branch_id}' has no compute endpoint.")
        for endpoint in endpoints:
            if endpoint.type == "read_write":
                return endpoint
        return endpoints[0]

    def get_role_password(self, project_id: str, branch_id: str, role: str) -> str:
        data = self._get(
            f"/projects/{_seg(project_id)}/branches/{_seg(branch_id)}/roles/{_seg(role)}/reveal_password"
        )
        password = data.get("password") if isinstance(data, dict) else None
        if not password:
            raise CatalogError(f"No password returned for role '{role}'.")
        return str(password)

    def reset_branch_to_parent(self, project_id: str, branch_id: str, parent_id: str) -> None:
        """Restore the branch from its parent's current state. Not retried."""
        logger.info("Resetting branch %s to parent %s", branch_id, parent_id)
        self._request(
            "POST",
            f"/projects/{_seg(project_id)}/branches/{_seg(branch_id)}/restore",
            json={"source_branch_id": parent_id},
        )

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()

    def __enter__(self) -> NeonApiClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
