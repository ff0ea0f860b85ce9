"""
Integration platform client (integration.app REST API).
Runs named actions against a customer's connection, lists connections and
reads/toggles flow instances. Connector auth and per-provider translation
happen on the platform side; this module never retries.
"""

import httpx
import jwt
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Optional, Dict, Any, List
from dotenv import load_dotenv

from errors import UpstreamError

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

INTEGRATION_APP_API_URI = os.environ.get("INTEGRATION_APP_API_URI", "https://api.integration.app").rstrip("/")
INTEGRATION_APP_WORKSPACE_KEY = os.environ.get("INTEGRATION_APP_WORKSPACE_KEY", "")
INTEGRATION_APP_WORKSPACE_SECRET = os.environ.get("INTEGRATION_APP_WORKSPACE_SECRET", "")
INTEGRATION_APP_TIMEOUT = 30.0

# Customer access tokens are minted per request and live for two hours
TOKEN_ALGORITHM = "HS512"
TOKEN_EXPIRATION_HOURS = 2

FLOW_STATE_READY = "READY"


class IntegrationAPIError(UpstreamError):
    """Custom exception for integration platform API errors."""
    pass


@dataclass
class ActionPage:
    """One page of action output. next_cursor is opaque and issued by the platform."""
    records: List[dict] = field(default_factory=list)
    next_cursor: Optional[str] = None


def generate_customer_token(
    customer_id: str,
    customer_name: str = None,
    workspace_key: str = None,
    workspace_secret: str = None,
) -> str:
    """Sign a platform access token that acts on behalf of one customer."""
    workspace_key = workspace_key or INTEGRATION_APP_WORKSPACE_KEY
    workspace_secret = workspace_secret or INTEGRATION_APP_WORKSPACE_SECRET
    if not workspace_key or not workspace_secret:
        raise IntegrationAPIError("Integration workspace credentials are not configured")

    payload = {
        "id": customer_id,
        "name": customer_name or customer_id,
        "iss": workspace_key,
        "exp": datetime.now(timezone.utc) + timedelta(hours=TOKEN_EXPIRATION_HOURS),
    }
    return jwt.encode(payload, workspace_secret, algorithm=TOKEN_ALGORITHM)


class IntegrationClient:
    """Client for the integration platform, acting on behalf of customers."""

    def __init__(
        self,
        api_uri: str = None,
        workspace_key: str = None,
        workspace_secret: str = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_uri = (api_uri or INTEGRATION_APP_API_URI).rstrip("/")
        self.workspace_key = workspace_key or INTEGRATION_APP_WORKSPACE_KEY
        self.workspace_secret = workspace_secret or INTEGRATION_APP_WORKSPACE_SECRET
        self.http_client = http_client

    async def _call(
        self,
        method: str,
        path: str,
        customer_id: str,
        data: dict = None,
        params: dict = None,
    ) -> dict:
        """Make an authenticated API call on behalf of a customer."""
        token = generate_customer_token(
            customer_id, workspace_key=self.workspace_key, workspace_secret=self.workspace_secret
        )
        url = f"{self.api_uri}{path}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            if self.http_client is not None:
                response = await self._send(self.http_client, method, url, headers, data, params)
            else:
                async with httpx.AsyncClient(timeout=INTEGRATION_APP_TIMEOUT) as client:
                    response = await self._send(client, method, url, headers, data, params)
        except httpx.TimeoutException:
            raise IntegrationAPIError("Connection timeout. Please check the integration connection")
        except httpx.RequestError as e:
            raise IntegrationAPIError(f"Connection error: {str(e)}")

        if response.status_code == 401:
            raise IntegrationAPIError("Authentication failed. Token may be invalid")
        if response.status_code == 404:
            raise IntegrationAPIError(f"Not found: {path}")
        if response.status_code == 429:
            raise IntegrationAPIError("Rate limit exceeded")
        if response.status_code >= 400:
            error_body = response.text[:500]
            logger.error(f"Integration API error {response.status_code} on {method} {path}: {error_body}")
            raise IntegrationAPIError(f"API error: {response.status_code}")

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise IntegrationAPIError(f"Invalid JSON response from {path}")

    @staticmethod
    async def _send(client: httpx.AsyncClient, method: str, url: str, headers: dict, data, params):
        method = method.upper()
        if method == "GET":
            return await client.get(url, headers=headers, params=params)
        elif method == "POST":
            return await client.post(url, headers=headers, json=data)
        elif method == "PATCH":
            return await client.patch(url, headers=headers, json=data)
        raise IntegrationAPIError(f"Unsupported method: {method}")

    # ==================== Connections ====================

    async def list_connections(self, customer_id: str) -> List[Dict[str, Any]]:
        result = await self._call("GET", "/connections", customer_id)
        return result.get("items") or []

    async def get_first_connection(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """The customer's first connection, or None if nothing is connected yet."""
        connections = await self.list_connections(customer_id)
        return connections[0] if connections else None

    # ==================== Actions ====================

    async def run_action_raw(
        self, customer_id: str, connection_id: str, action_key: str, input: Optional[dict] = None
    ) -> Dict[str, Any]:
        """Run an action and return its raw output object."""
        result = await self._call(
            "POST",
            f"/connections/{connection_id}/actions/{action_key}/run",
            customer_id,
            data=input or {},
        )
        output = result.get("output")
        return output if isinstance(output, dict) else {}

    async def run_action(
        self, customer_id: str, connection_id: str, action_key: str, cursor: Optional[str] = None
    ) -> ActionPage:
        """Run a list action for one page. Pass the previous page's cursor to continue."""
        output = await self.run_action_raw(
            customer_id, connection_id, action_key, {"cursor": cursor} if cursor else None
        )
        records = output.get("records") or []
        if not isinstance(records, list):
            raise IntegrationAPIError(f"Action {action_key} returned malformed records")
        return ActionPage(records=records, next_cursor=output.get("cursor") or None)

    # ==================== Flows ====================

    async def get_flow_instance(self, customer_id: str, connection_id: str, flow_key: str) -> Dict[str, Any]:
        return await self._call("GET", f"/connections/{connection_id}/flows/{flow_key}", customer_id)

    async def set_flow_enabled(
        self, customer_id: str, connection_id: str, flow_key: str, enabled: bool
    ) -> Dict[str, Any]:
        return await self._call(
            "PATCH",
            f"/connections/{connection_id}/flows/{flow_key}",
            customer_id,
            data={"enabled": enabled},
        )
