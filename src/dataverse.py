"""
Dataverse Web API transport.

Thin aiohttp wrapper around the OData v4 endpoint of a Dataverse
environment. Maps HTTP and network failures to RemoteFault; it does not
retry. Token acquisition is external: pass a bearer token or an async
callable returning one.
"""

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from errors import RemoteFault

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]

ENTITY_ID_PATTERN = re.compile(r"\(([0-9a-fA-F{}-]{32,38})\)\s*$")


# OData helpers


def escape_literal(value: str) -> str:
    """Escape a string for use inside an OData string literal."""
    return value.replace("'", "''")


def odata_string(value: str) -> str:
    """Quote a value as an OData string literal."""
    return f"'{escape_literal(value)}'"


def build_filter(*clauses: Optional[str]) -> str:
    """Join non-empty filter clauses with 'and'."""
    return " and ".join(c for c in clauses if c)


def entity_path(entity_set: str, record_id: str) -> str:
    """Path of a single record, e.g. plugintypes(<id>)."""
    return f"{entity_set}({record_id})"


def parse_entity_id(header: Optional[str]) -> Optional[str]:
    """Extract the record id from an OData-EntityId header."""
    if not header:
        return None
    match = ENTITY_ID_PATTERN.search(header)
    return match.group(1) if match else None


class DataverseClient:
    """
    Async client for the Dataverse Web API.

    Use as an async context manager, or call close() when done. When a
    session is injected the caller owns it and close() leaves it open.
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        api_version: str = "9.2",
        timeout: int = 60,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/data/v{api_version}"
        self.access_token = access_token
        self.token_provider = token_provider
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "DataverseClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _get_headers(self, return_representation: bool = False) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json; charset=utf-8",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
        }
        token = self.access_token
        if self.token_provider is not None:
            token = await self.token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if return_representation:
            headers["Prefer"] = "return=representation"
        return headers

    def _url(self, path: str) -> str:
        return f"{self.api_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        return_representation: bool = False,
    ) -> Dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Returns an empty dict for bodiless responses. When the body is empty
        but an OData-EntityId header is present, its id is returned under
        "id".

        Raises:
            RemoteFault: On any HTTP error status or network failure.
        """
        session = await self._ensure_session()
        headers = await self._get_headers(return_representation)
        url = self._url(path)

        logger.debug(f"{method} {url} params={params}")
        try:
            async with session.request(
                method, url, headers=headers, params=params, json=payload
            ) as response:
                text = await response.text()
                if response.status >= 400:
                    raise self._fault_from_response(method, path, response.status, text)

                body: Dict[str, Any] = {}
                if text:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = {}

                entity_id = parse_entity_id(response.headers.get("OData-EntityId"))
                if entity_id and not body:
                    body = {"id": entity_id, "@odata.entityid": entity_id}
                return body
        except asyncio.TimeoutError as e:
            raise RemoteFault(
                f"{method} {path} timed out after {self.timeout}s",
                category=RemoteFault.NETWORK,
            ) from e
        except aiohttp.ClientError as e:
            raise RemoteFault(
                f"{method} {path} failed: {e}", category=RemoteFault.NETWORK
            ) from e

    @staticmethod
    def _fault_from_response(
        method: str, path: str, status: int, text: str
    ) -> RemoteFault:
        """Build a RemoteFault from an error response."""
        code = None
        detail = text
        try:
            error = json.loads(text).get("error", {}) if text else {}
            code = error.get("code")
            detail = error.get("message", text)
        except (ValueError, AttributeError):
            pass

        if status in (401, 403):
            category = RemoteFault.AUTH
        elif status == 404:
            category = RemoteFault.NOT_FOUND
        elif status >= 500:
            category = RemoteFault.SERVER
        else:
            category = RemoteFault.VALIDATION

        return RemoteFault(
            f"{method} {path} failed: {detail or 'no detail'}",
            category=category,
            status=status,
            code=code,
        )

    async def get(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return await self.request("GET", path, params=params)

    async def post(
        self,
        path: str,
        payload: Dict[str, Any],
        return_representation: bool = False,
    ) -> Dict[str, Any]:
        return await self.request(
            "POST", path, payload=payload, return_representation=return_representation
        )

    async def patch(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request("PATCH", path, payload=payload)

    async def delete(self, path: str) -> None:
        await self.request("DELETE", path)

    async def get_value(
        self,
        entity_set: str,
        select: Optional[List[str]] = None,
        filter_expr: Optional[str] = None,
        expand: Optional[str] = None,
        orderby: Optional[str] = None,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Query an entity set and return the OData "value" rows.

        Args:
            entity_set: Entity set name, e.g. "plugintypes"
            select: Columns for $select
            filter_expr: $filter expression (literals already escaped)
            expand: $expand expression
            orderby: $orderby expression
            top: $top row limit

        Returns:
            List of record dicts, possibly empty.
        """
        params: Dict[str, Any] = {}
        if select:
            params["$select"] = ",".join(select)
        if filter_expr:
            params["$filter"] = filter_expr
        if expand:
            params["$expand"] = expand
        if orderby:
            params["$orderby"] = orderby
        if top is not None:
            params["$top"] = str(top)

        body = await self.get(entity_set, params=params or None)
        return list(body.get("value") or [])
