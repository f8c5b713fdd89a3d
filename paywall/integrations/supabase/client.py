"""
Supabase HTTP client for the paywall.

Covers the four surfaces the entitlement layer consumes:
- PostgREST tables (/rest/v1/<table>)
- Stored procedures (/rest/v1/rpc/<fn>)
- Edge functions (/functions/v1/<name>)
- Auth (/auth/v1/user)

SECURITY: The service role key bypasses row level security. Use it only in
server-side jobs; client flows pass the user's access token.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from paywall.config.billing_config import BillingConfig, get_billing_config

logger = logging.getLogger(__name__)

# PostgREST error code for "no rows" on single-object requests
PGRST_NO_ROWS = "PGRST116"
NETWORK_ERROR_CODE = "network_error"


class SupabaseError(Exception):
    """Base exception for Supabase errors."""
    pass


class SupabaseAPIError(SupabaseError):
    """Error communicating with Supabase."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[Any] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response = response

    @property
    def is_not_found(self) -> bool:
        return self.code == PGRST_NO_ROWS

    @property
    def is_network_error(self) -> bool:
        return self.code == NETWORK_ERROR_CODE


class SupabaseClient:
    """
    Async client for a Supabase project.

    Usage:
        async with SupabaseClient(url, anon_key, access_token=token) as client:
            rows = await client.select("user_subscriptions", {"user_id": f"eq.{user_id}"})
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize client for one project.

        Args:
            url: Project URL (e.g., 'https://abc.supabase.co')
            api_key: Anon or service role key
            access_token: User JWT; defaults to api_key for server-side calls
            timeout: Total request timeout in seconds
            connect_timeout: Connect timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not url:
            raise ValueError("url is required")
        if not api_key:
            raise ValueError("api_key is required")

        self.base_url = url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers={
                "Content-Type": "application/json",
                "apikey": api_key,
                "Authorization": f"Bearer {access_token or api_key}",
            },
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """
        Send a request and decode the JSON body.

        Returns:
            Decoded JSON, or None for empty bodies

        Raises:
            SupabaseAPIError: On non-2xx responses, timeouts and transport errors
        """
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.error("Supabase request timeout", extra={"path": path, "error": str(e)})
            raise SupabaseAPIError(f"Request timeout: {e}", code=NETWORK_ERROR_CODE)
        except httpx.RequestError as e:
            logger.error("Supabase request error", extra={"path": path, "error": str(e)})
            raise SupabaseAPIError(f"Request error: {e}", code=NETWORK_ERROR_CODE)

        if response.status_code >= 400:
            body = None
            if response.text:
                try:
                    body = response.json()
                except ValueError:
                    body = {"message": response.text[:500]}
            code = body.get("code") if isinstance(body, dict) else None
            message = body.get("message") if isinstance(body, dict) else None

            if response.status_code == 401:
                logger.error("Supabase authentication failed", extra={
                    "path": path,
                    "status_code": response.status_code
                })
            elif code != PGRST_NO_ROWS:
                logger.error("Supabase API error", extra={
                    "path": path,
                    "status_code": response.status_code,
                    "code": code,
                })
            raise SupabaseAPIError(
                message or f"Supabase API error: {response.status_code}",
                status_code=response.status_code,
                code=code,
                response=body,
            )

        if not response.content:
            return None
        return response.json()

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call a stored procedure."""
        return await self._request("POST", f"/rest/v1/rpc/{function}", json=params or {})

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, str]] = None,
        columns: str = "*",
        order: Optional[str] = None,
        limit: Optional[int] = None,
        single: bool = False,
    ) -> Any:
        """
        Read rows from a table.

        Args:
            table: Table name
            filters: PostgREST filters, e.g. {"user_id": "eq.123"}
            columns: Select expression, may embed related tables
            order: Order expression, e.g. "created_at.desc"
            limit: Max rows
            single: Return one object; raises SupabaseAPIError(PGRST116) when none

        Returns:
            List of rows, or one row when single=True
        """
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        headers = {"Accept": "application/vnd.pgrst.object+json"} if single else None
        return await self._request("GET", f"/rest/v1/{table}", params=params, headers=headers)

    async def insert(self, table: str, row: Dict[str, Any]) -> Any:
        return await self._request(
            "POST", f"/rest/v1/{table}", json=row,
            headers={"Prefer": "return=representation"},
        )

    async def upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> Any:
        """Insert or merge on the given unique column."""
        return await self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"on_conflict": on_conflict},
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )

    async def update(self, table: str, values: Dict[str, Any], filters: Dict[str, str]) -> Any:
        return await self._request(
            "PATCH", f"/rest/v1/{table}", params=filters, json=values,
            headers={"Prefer": "return=representation"},
        )

    async def invoke_function(self, name: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke an edge function and return its JSON response."""
        return await self._request("POST", f"/functions/v1/{name}", json=body or {})

    async def get_user(self, access_token: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Resolve the user behind an access token.

        Returns:
            The auth user object, or None if the token is missing or rejected
        """
        token = access_token or self.access_token
        if not token:
            return None
        try:
            return await self._request(
                "GET", "/auth/v1/user", headers={"Authorization": f"Bearer {token}"}
            )
        except SupabaseAPIError as e:
            if e.status_code in (401, 403):
                return None
            raise


def get_supabase_client(
    access_token: Optional[str] = None,
    service_role: bool = False,
    config: Optional[BillingConfig] = None,
) -> SupabaseClient:
    """
    Factory function to create a SupabaseClient from configuration.

    Args:
        access_token: User JWT for client-scoped calls
        service_role: Use the service role key (server-side jobs only)
        config: Billing configuration (defaults to the process-wide one)

    Returns:
        Configured SupabaseClient instance
    """
    config = config or get_billing_config()
    supabase = config.supabase
    api_key = supabase.service_role_key if service_role else supabase.anon_key
    return SupabaseClient(
        url=supabase.url,
        api_key=api_key,
        access_token=access_token,
        timeout=supabase.timeout_seconds,
        connect_timeout=supabase.connect_timeout_seconds,
    )


def rows(payload: Any) -> List[Dict[str, Any]]:
    """Normalize a PostgREST payload to a list of rows."""
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    return [payload]
