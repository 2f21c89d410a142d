"""Keycloak Admin REST client for TideCloak realms.

Every call carries the session's access token from ``IAMService.get_token()``
as a bearer credential, so the logged-in user needs the realm-management
roles each endpoint demands. Relative paths resolve against the session's
auth server URL.

Example:
    admin = AdminAPI(iam)
    roles = await admin.get_roles()
    await admin.add_user_roles(user_id, [role for role in roles if ...])
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Sequence
from urllib.parse import quote

import httpx

from tidecloak.admin.models import ChangeSet
from tidecloak.auth.iam_service import IAMService
from tidecloak.auth.models.errors import (
    ClientNotFoundError,
    ConfigurationError,
    HTTPRequestError,
    NotInitializedError,
    TokenError,
)
from tidecloak.auth.primitives.http import JsonHttpClient

logger = logging.getLogger(__name__)

DEFAULT_REALM = "master"
# Tide link URLs stay valid for 12 hours unless told otherwise
DEFAULT_LINK_LIFESPAN = 43200
LINK_TIDE_ACCOUNT_ACTION = "link-tide-account-action"


def _segment(value: str) -> str:
    return quote(str(value), safe="")


class AdminAPI:
    """Realm roles, client roles, users and Tide change sets."""

    def __init__(
        self,
        iam: IAMService,
        realm: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the admin client.

        Args:
            iam: Session manager supplying the bearer token and base URL
            realm: Realm to administer; defaults to the session's realm
            http_client: Optional preconfigured client
        """
        self.iam = iam
        self.realm = realm
        self.http = JsonHttpClient(http_client)

    def get_realm(self) -> str:
        if self.realm:
            return self.realm
        try:
            return self.iam.get_config().realm or DEFAULT_REALM
        except NotInitializedError:
            return DEFAULT_REALM

    def _configured_client_id(self) -> str | None:
        try:
            return self.iam.get_config().resource
        except NotInitializedError:
            return None

    # Requests

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.iam.get_base_url()}{endpoint}"

    def _realm_path(self, *segments: str) -> str:
        path = "/".join(_segment(s) for s in segments)
        return f"/admin/realms/{_segment(self.get_realm())}/{path}"

    async def _auth_headers(self) -> dict[str, str]:
        token = await self.iam.get_token()
        if not token:
            raise TokenError("Admin API requires an authenticated session")
        return {"Authorization": f"Bearer {token}"}

    async def fetch(
        self,
        endpoint: str,
        method: str = "GET",
        json_body: Any = None,
        files: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Authenticated JSON request against an admin endpoint.

        Args:
            endpoint: Path below the auth server URL, or an absolute URL
            method: HTTP method
            json_body: Body to send as JSON
            files: Multipart form fields
            params: Query parameters

        Returns:
            Parsed JSON, or None for an empty body

        Raises:
            TokenError: If the session has no access token
            HTTPRequestError: If the server refuses the request
        """
        return await self.http.fetch_json(
            self._url(endpoint),
            method=method,
            json_body=json_body,
            files=files,
            params=params,
            headers=await self._auth_headers(),
        )

    # Realm roles

    async def get_roles(self) -> list[dict[str, Any]]:
        return await self.fetch(self._realm_path("roles"))

    async def get_role(self, role_name: str) -> dict[str, Any]:
        return await self.fetch(self._realm_path("roles", role_name))

    async def create_role(self, role: Mapping[str, Any]) -> None:
        await self.fetch(self._realm_path("roles"), "POST", dict(role))

    async def update_role(self, role_name: str, role: Mapping[str, Any]) -> None:
        await self.fetch(self._realm_path("roles", role_name), "PUT", dict(role))

    async def delete_role(self, role_name: str) -> None:
        await self.fetch(self._realm_path("roles", role_name), "DELETE")

    # Client roles

    async def get_client_uuid(self, client_id: str | None = None) -> str:
        """Resolve a ``clientId`` to the client's internal id.

        Args:
            client_id: Defaults to the session's configured client

        Raises:
            ConfigurationError: If no client id is given or configured
            ClientNotFoundError: If the realm has no such client
        """
        client_id = client_id or self._configured_client_id()
        if not client_id:
            raise ConfigurationError("No client ID available")

        clients = await self.fetch(
            self._realm_path("clients"), params={"clientId": client_id}
        )
        if not clients:
            raise ClientNotFoundError(client_id)
        return clients[0]["id"]

    async def _client_roles_path(
        self, client_id: str | None, *segments: str
    ) -> str:
        uuid = await self.get_client_uuid(client_id)
        return self._realm_path("clients", uuid, "roles", *segments)

    async def get_client_roles(
        self, client_id: str | None = None
    ) -> list[dict[str, Any]]:
        return await self.fetch(await self._client_roles_path(client_id))

    async def get_client_role(
        self, role_name: str, client_id: str | None = None
    ) -> dict[str, Any]:
        return await self.fetch(await self._client_roles_path(client_id, role_name))

    async def create_client_role(
        self, role: Mapping[str, Any], client_id: str | None = None
    ) -> None:
        await self.fetch(await self._client_roles_path(client_id), "POST", dict(role))

    async def update_client_role(
        self, role_name: str, role: Mapping[str, Any], client_id: str | None = None
    ) -> None:
        path = await self._client_roles_path(client_id, role_name)
        await self.fetch(path, "PUT", dict(role))

    async def delete_client_role(
        self, role_name: str, client_id: str | None = None
    ) -> None:
        path = await self._client_roles_path(client_id, role_name)
        await self.fetch(path, "DELETE")

    # Users

    async def get_users(
        self,
        first: int | None = None,
        max_results: int | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        if first is not None:
            params["first"] = first
        if max_results is not None:
            params["max"] = max_results
        if search:
            params["search"] = search
        return await self.fetch(self._realm_path("users"), params=params or None)

    async def get_user(self, user_id: str) -> dict[str, Any]:
        return await self.fetch(self._realm_path("users", user_id))

    async def create_user(self, user: Mapping[str, Any]) -> None:
        await self.fetch(self._realm_path("users"), "POST", dict(user))

    async def update_user(self, user_id: str, user: Mapping[str, Any]) -> None:
        await self.fetch(self._realm_path("users", user_id), "PUT", dict(user))

    async def delete_user(self, user_id: str) -> None:
        await self.fetch(self._realm_path("users", user_id), "DELETE")

    async def set_user_enabled(self, user_id: str, enabled: bool) -> None:
        await self.fetch(
            self._realm_path("users", user_id), "PUT", {"enabled": enabled}
        )

    async def get_tide_link_url(
        self,
        user_id: str,
        redirect_uri: str,
        lifespan: int = DEFAULT_LINK_LIFESPAN,
    ) -> str:
        """Link that lets a user attach their Tide account.

        Args:
            user_id: User to link
            redirect_uri: Where the user lands after linking
            lifespan: Link validity in seconds

        Returns:
            The link URL (the endpoint answers with plain text)
        """
        params = {
            "userId": user_id,
            "lifespan": lifespan,
            "redirect_uri": redirect_uri,
            "client_id": self._configured_client_id() or "",
        }
        response = await self.http.request(
            self._url(
                self._realm_path("tideAdminResources", "get-required-action-link")
            ),
            method="POST",
            json_body=[LINK_TIDE_ACCOUNT_ACTION],
            params=params,
            headers=await self._auth_headers(),
        )
        return response.text

    # User role mappings

    async def get_user_roles(self, user_id: str) -> list[dict[str, Any]]:
        return await self.fetch(
            self._realm_path("users", user_id, "role-mappings", "realm")
        )

    async def add_user_roles(
        self, user_id: str, roles: Sequence[Mapping[str, Any]]
    ) -> None:
        await self.fetch(
            self._realm_path("users", user_id, "role-mappings", "realm"),
            "POST",
            [dict(role) for role in roles],
        )

    async def remove_user_roles(
        self, user_id: str, roles: Sequence[Mapping[str, Any]]
    ) -> None:
        await self.fetch(
            self._realm_path("users", user_id, "role-mappings", "realm"),
            "DELETE",
            [dict(role) for role in roles],
        )

    # Policy templates

    async def get_templates(self) -> list[dict[str, Any]]:
        """Policy templates; empty when the realm has no Tide admin extension."""
        try:
            templates = await self.fetch(
                self._realm_path("tide-admin", "policy-templates")
            )
        except HTTPRequestError as e:
            logger.warning(f"Policy templates unavailable: {e}")
            return []
        return templates or []

    # Change sets

    async def _change_requests(self, kind: str) -> list[ChangeSet]:
        try:
            data = await self.fetch(
                self._realm_path("tide-admin", "change-set", kind, "requests")
            )
        except HTTPRequestError as e:
            logger.warning(f"{kind} change requests unavailable: {e}")
            return []
        return [ChangeSet.model_validate(entry) for entry in data or []]

    async def get_user_change_requests(self) -> list[ChangeSet]:
        return await self._change_requests("users")

    async def get_role_change_requests(self) -> list[ChangeSet]:
        return await self._change_requests("roles")

    async def get_pending_change_sets(self) -> list[ChangeSet]:
        """User change requests followed by role change requests."""
        users, roles = await asyncio.gather(
            self.get_user_change_requests(), self.get_role_change_requests()
        )
        return [*users, *roles]

    async def approve_change_set(self, change_set: ChangeSet) -> Any:
        return await self.fetch(
            self._realm_path("tideAdminResources", "add-review"),
            "POST",
            files=change_set.form_fields(),
        )

    async def approve_change_set_with_signature(
        self, change_set: ChangeSet, signed_request: str
    ) -> Any:
        return await self.fetch(
            self._realm_path("tideAdminResources", "add-review"),
            "POST",
            files=change_set.form_fields(requests=signed_request),
        )

    async def reject_change_set(self, change_set: ChangeSet) -> Any:
        return await self.fetch(
            self._realm_path("tideAdminResources", "add-rejection"),
            "POST",
            files=change_set.form_fields(),
        )

    async def commit_change_set(self, change_set: ChangeSet) -> Any:
        return await self.fetch(
            self._realm_path("tide-admin", "change-set", "commit"),
            "POST",
            change_set.to_wire(),
        )

    async def cancel_change_set(self, change_set: ChangeSet) -> Any:
        return await self.fetch(
            self._realm_path("tide-admin", "change-set", "cancel"),
            "POST",
            change_set.to_wire(),
        )

    async def get_raw_change_set_request(
        self, change_set: ChangeSet
    ) -> list[dict[str, Any]]:
        """Serialized change-set requests for the enclave to sign."""
        entry = {**(change_set.model_extra or {}), **change_set.to_wire()}
        return await self.fetch(
            self._realm_path("tide-admin", "change-set", "sign", "batch"),
            "POST",
            {"changeSets": [entry]},
        )

    # Events

    async def get_access_logs(
        self, first: int | None = None, max_results: int | None = None
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        if first is not None:
            params["first"] = first
        if max_results is not None:
            params["max"] = max_results
        return await self.fetch(self._realm_path("events"), params=params or None)

    async def close(self) -> None:
        await self.http.close()
