"""
Client for the Apache Guacamole REST API.

Only the calls the watcher needs: token creation and connection
create / update / delete. The ``httpx.AsyncClient`` is built by the caller and
already carries the base URL and request timeout.

Wire format::

    POST   /api/tokens                                        (form: username, password)
    POST   /api/session/data/{dataSource}/connections?token=   (JSON connection)
    PUT    /api/session/data/{dataSource}/connections/{id}?token=
    DELETE /api/session/data/{dataSource}/connections/{id}?token=
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vm_watcher.errors import AuthenticationError, GatewayAPIError, TransportError

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# Pydantic DTOs
# --------------------------------------------------------------------------- #


class AuthSession(BaseModel):
    """Response of ``POST /api/tokens``."""

    model_config = ConfigDict(populate_by_name=True)

    auth_token: str = Field(alias="authToken")
    username: str = ""
    data_source: str = Field(alias="dataSource")
    available_data_sources: List[str] = Field(default_factory=list, alias="availableDataSources")


class GuacamoleConnection(BaseModel):
    """Body sent when creating or updating a connection."""

    model_config = ConfigDict(populate_by_name=True)

    parent_identifier: str = Field(default="ROOT", alias="parentIdentifier")
    name: str
    protocol: str
    parameters: Dict[str, str] = Field(default_factory=dict)
    attributes: Dict[str, str] = Field(default_factory=dict)


class ConnectionRecord(GuacamoleConnection):
    """Connection as echoed back by Guacamole after creation."""

    identifier: str
    name: str = ""
    protocol: str = ""


# --------------------------------------------------------------------------- #
# Client
# --------------------------------------------------------------------------- #


class GuacamoleClient:
    def __init__(self, http: httpx.AsyncClient, username: str, password: str):
        self.http = http
        self.username = username
        self.password = password

    async def authenticate(self) -> AuthSession:
        """Request a fresh auth token. Tokens are never cached between calls."""
        try:
            response = await self.http.post(
                "/api/tokens",
                data={"username": self.username, "password": self.password},
            )
        except httpx.TransportError as exc:
            raise AuthenticationError(f"Failed to authenticate with Guacamole: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise AuthenticationError(f"Authentication failed with status {response.status_code}")
        try:
            return AuthSession.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AuthenticationError(f"Failed to decode auth response: {exc}") from exc

    async def create_connection(self, session: AuthSession, connection: GuacamoleConnection) -> str:
        """Create *connection* and return the identifier Guacamole assigned to it."""
        response = await self._request(
            "POST",
            self._connections_path(session),
            session,
            json=connection.model_dump(by_alias=True),
        )
        self._check(response, "Connection creation failed")
        try:
            record = ConnectionRecord.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise GatewayAPIError(f"Failed to decode connection response: {exc}", response.status_code) from exc

        logger.info("Created Guacamole connection %s (%s, %s)", record.identifier, connection.name, record.protocol)
        return record.identifier

    async def update_connection(self, session: AuthSession, identifier: str, connection: GuacamoleConnection) -> None:
        response = await self._request(
            "PUT",
            self._connections_path(session, identifier),
            session,
            json=connection.model_dump(by_alias=True),
        )
        self._check(response, "Connection update failed")
        logger.info("Updated Guacamole connection %s (%s)", identifier, connection.name)

    async def delete_connection(self, session: AuthSession, identifier: str) -> None:
        response = await self._request("DELETE", self._connections_path(session, identifier), session)
        self._check(response, "Connection deletion failed")
        logger.info("Deleted Guacamole connection %s", identifier)

    async def aclose(self) -> None:
        await self.http.aclose()

    # --- helpers ---------------------------------------------------------

    @staticmethod
    def _connections_path(session: AuthSession, identifier: Optional[str] = None) -> str:
        path = f"/api/session/data/{quote(session.data_source, safe='')}/connections"
        if identifier is not None:
            path = f"{path}/{quote(identifier, safe='')}"
        return path

    async def _request(self, method: str, path: str, session: AuthSession, **kwargs) -> httpx.Response:
        try:
            return await self.http.request(method, path, params={"token": session.auth_token}, **kwargs)
        except httpx.TransportError as exc:
            raise TransportError(f"{method} {path} failed: {exc.__class__.__name__}: {exc}") from exc

    @staticmethod
    def _check(response: httpx.Response, message: str) -> None:
        if not response.is_success:
            raise GatewayAPIError(message, response.status_code)
