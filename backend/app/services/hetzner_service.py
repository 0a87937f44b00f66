import logging
from dataclasses import dataclass

import httpx

from app.core.config import settings
from app.core.exceptions import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MachineInfo:
    machine_id: str
    public_ip: str


class HetznerService:
    """Wrapper around the Hetzner Cloud REST API for creating and deleting machines."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url or settings.HETZNER_API_URL,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout or settings.HETZNER_TIMEOUT_SECONDS,
            transport=transport,
        )

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            return resp.json().get("error", {}).get("message") or resp.reason_phrase
        except ValueError:
            return resp.reason_phrase

    def create_machine(
        self,
        name: str,
        server_type: str,
        location: str,
        user_data: str,
        image: str | None = None,
    ) -> MachineInfo:
        """Create and start a machine running ``user_data`` at first boot."""
        payload = {
            "name": name,
            "server_type": server_type,
            "location": location,
            "image": image or settings.HETZNER_IMAGE,
            "user_data": user_data,
            "start_after_create": True,
            "public_net": {"enable_ipv4": True, "enable_ipv6": True},
        }
        try:
            resp = self._client.post("/servers", json=payload)
        except httpx.HTTPError as exc:
            logger.error("Hetzner API request failed: %s", exc)
            raise ProviderError(f"Could not reach the Hetzner API: {exc}") from exc

        if resp.status_code >= 400:
            logger.error(
                "Hetzner API error creating %s: %d %s",
                name,
                resp.status_code,
                self._error_message(resp),
            )
            raise ProviderError(
                "Failed to create server. Check your Hetzner API key and permissions "
                f"({resp.status_code}: {self._error_message(resp)})"
            )

        try:
            server = resp.json()["server"]
            return MachineInfo(
                machine_id=str(server["id"]),
                public_ip=server["public_net"]["ipv4"]["ip"],
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError("Unexpected response from the Hetzner API") from exc

    def delete_machine(self, machine_id: str) -> bool:
        """Delete a machine. Best-effort: failures are logged, never raised."""
        try:
            resp = self._client.delete(f"/servers/{machine_id}")
        except httpx.HTTPError as exc:
            logger.warning("Hetzner delete of %s failed: %s", machine_id, exc)
            return False
        if resp.status_code >= 400 and resp.status_code != 404:
            logger.warning(
                "Hetzner delete of %s returned %d %s",
                machine_id,
                resp.status_code,
                self._error_message(resp),
            )
            return False
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
