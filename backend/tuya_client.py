import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Callable, Optional

import httpx

from exceptions import UpstreamAuthError, UpstreamRequestError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v1.0/token?grant_type=1"
TOKEN_REFRESH_MARGIN_MS = 60 * 1000

# Tuya reports voltage and power as fixed-point values with one decimal place
SCALED_CODES = {
    "cur_voltage": 10,
    "cur_power": 10,
}


def get_value(status: Any, code: str) -> float:
    """Return the scaled value of a status code, 0 when absent.

    cur_voltage (x0.1 V) and cur_power (x0.1 W) are divided by 10,
    cur_current stays in mA.
    """
    if not isinstance(status, list):
        return 0
    for item in status:
        if not isinstance(item, dict) or item.get("code") != code:
            continue
        value = item.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        divisor = SCALED_CODES.get(code)
        return value / divisor if divisor else value
    return 0


def build_reading(timestamp, status: Any) -> dict:
    """Build the live reading pushed to websocket subscribers."""
    return {
        "time": timestamp.isoformat(),
        "current": get_value(status, "cur_current"),
        "voltage": get_value(status, "cur_voltage"),
        "power": get_value(status, "cur_power"),
    }


class TuyaClient:
    """Async client for the Tuya OpenAPI with a shared access token cache.

    The token cache is plain instance state without a lock. Two callers
    that both see an expired token will both fetch a new one; either
    token is valid so the last write wins.
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        region: Optional[str] = None,
        device_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id or os.getenv("TUYA_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("TUYA_CLIENT_SECRET")
        self.region = region or os.getenv("TUYA_API_REGION", "tuyain")
        self.device_id = device_id or os.getenv("TUYA_DEVICE_ID")

        if not self.client_id:
            raise ValueError("TUYA_CLIENT_ID environment variable is required")
        if not self.client_secret:
            raise ValueError("TUYA_CLIENT_SECRET environment variable is required")
        if not self.device_id:
            raise ValueError("TUYA_DEVICE_ID environment variable is required")

        self.base_url = f"https://openapi.{self.region}.com"
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

        self._token: Optional[str] = None
        self._token_expires_at = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=10.0, transport=self._transport
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def sign(self, method: str, path: str, body: str, t: str, access_token: str = "") -> str:
        """Compute the HMAC-SHA256 request signature, uppercase hex."""
        content_hash = hashlib.sha256(body.encode("utf-8")).hexdigest()
        string_to_sign = "\n".join([method, content_hash, "", path])
        message = self.client_id + access_token + t + string_to_sign
        return hmac.new(
            self.client_secret.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest().upper()

    def _headers(self, method: str, path: str, body: str, access_token: str = "") -> dict:
        t = str(self._now_ms())
        headers = {
            "client_id": self.client_id,
            "sign": self.sign(method, path, body, t, access_token),
            "t": t,
            "sign_method": "HMAC-SHA256",
        }
        if access_token:
            headers["access_token"] = access_token
        if body:
            headers["Content-Type"] = "application/json"
        return headers

    async def get_access_token(self) -> str:
        """Return the cached token, fetching a new one when it is due for refresh."""
        now = self._now_ms()
        if self._token and now < self._token_expires_at:
            return self._token

        try:
            client = await self._get_client()
            response = await client.get(TOKEN_PATH, headers=self._headers("GET", TOKEN_PATH, ""))
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamAuthError(f"Failed to fetch Tuya access token: {e}") from e

        if not isinstance(data, dict):
            raise UpstreamAuthError("Tuya token request returned an invalid response")
        result = data.get("result")
        if data.get("success") is False or not isinstance(result, dict) or not result.get("access_token"):
            raise UpstreamAuthError(f"Tuya token request rejected: {data.get('msg', 'no token in response')}")

        # expire_time is reported in seconds
        self._token = result["access_token"]
        self._token_expires_at = now + int(result.get("expire_time", 0)) * 1000 - TOKEN_REFRESH_MARGIN_MS
        logger.info("Fetched new Tuya access token")
        return self._token

    async def signed_request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        token: Optional[str] = None,
    ) -> Any:
        """Send a signed request and return the decoded JSON payload."""
        access_token = token or await self.get_access_token()
        content = json.dumps(body) if body is not None else ""

        try:
            client = await self._get_client()
            response = await client.request(
                method,
                path,
                content=content or None,
                headers=self._headers(method, path, content, access_token),
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamRequestError(f"Tuya {method} {path} failed: {e}") from e

    async def signed_get(self, path: str, token: Optional[str] = None) -> Any:
        return await self.signed_request("GET", path, token=token)

    async def fetch_device_status(self) -> list:
        """Fetch the device status list, e.g. [{"code": "cur_power", "value": 4176}, ...]."""
        path = f"/v1.0/devices/{self.device_id}/status"
        data = await self.signed_get(path)
        if not isinstance(data, dict):
            raise UpstreamRequestError(f"Unexpected response from {path}")
        if data.get("success") is False:
            raise UpstreamRequestError(f"Tuya status request rejected: {data.get('msg')}")
        return data.get("result")

    async def send_commands(self, commands: list) -> Any:
        """Send device commands and return the raw upstream payload."""
        path = f"/v1.0/devices/{self.device_id}/commands"
        return await self.signed_request("POST", path, body={"commands": commands})
