import logging
import re

import httpx

from app.core.config import settings
from app.core.exceptions import MeshError

logger = logging.getLogger(__name__)

DEFAULT_DNS_SUFFIX = "tailnet.ts.net"
# MagicDNS device names look like "hostname.tailnet-name.ts.net"
_MAGIC_DNS_RE = re.compile(r"^[^.]+\.(.+\.ts\.net)\.?$")


class TailscaleService:
    """Wrapper around the Tailscale API for enrolling new machines in a tailnet."""

    def __init__(
        self,
        api_key: str,
        tailnet: str | None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.tailnet = tailnet or "-"
        self._client = httpx.Client(
            base_url=base_url or settings.TAILSCALE_API_URL,
            auth=(api_key, ""),
            timeout=timeout or settings.TAILSCALE_TIMEOUT_SECONDS,
            transport=transport,
        )

    def create_auth_key(self, description: str) -> str:
        """Mint a single-use, preauthorized join key for one machine."""
        payload = {
            "capabilities": {
                "devices": {
                    "create": {
                        "reusable": False,
                        "ephemeral": False,
                        "preauthorized": True,
                        "tags": [settings.TAILSCALE_TAG],
                    }
                }
            },
            "expirySeconds": settings.TAILSCALE_KEY_EXPIRY_SECONDS,
            "description": description,
        }
        try:
            resp = self._client.post(f"/tailnet/{self.tailnet}/keys", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Tailscale API request failed: %s", exc)
            raise MeshError(f"Could not reach the Tailscale API: {exc}") from exc

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("message") or resp.reason_phrase
            except ValueError:
                detail = resp.reason_phrase
            logger.error("Tailscale API error: %d %s", resp.status_code, detail)
            raise MeshError(
                "Failed to create Tailscale auth key. Check your API key and tailnet "
                f"permissions ({resp.status_code}: {detail})"
            )

        try:
            return resp.json()["key"]
        except (ValueError, KeyError) as exc:
            raise MeshError("Unexpected response from the Tailscale API") from exc

    def get_dns_suffix(self) -> str:
        """MagicDNS suffix read off an existing device; a placeholder if none match."""
        try:
            resp = self._client.get(
                f"/tailnet/{self.tailnet}/devices", params={"fields": "default"}
            )
        except httpx.HTTPError as exc:
            logger.warning("Could not list tailnet devices: %s", exc)
            return DEFAULT_DNS_SUFFIX

        if resp.status_code == 200:
            try:
                devices = resp.json().get("devices") or []
            except ValueError:
                devices = []
            for device in devices:
                match = _MAGIC_DNS_RE.match(device.get("name") or "")
                if match:
                    return match.group(1)
        else:
            logger.warning("Tailnet device listing returned %d", resp.status_code)

        return DEFAULT_DNS_SUFFIX

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
