"""Instance metadata client.

The controller runs on a provider instance and discovers its region and
VPC network from the link-local metadata endpoint.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import RemoteAPIError

logger = logging.getLogger(__name__)

METADATA_PATH = "/v1.json"
METADATA_TIMEOUT_SECONDS = 3.0


class MetadataClient:
    """Reads the local instance's metadata document.

    The document is fetched lazily on first use and cached for the life of
    the client; region and network attachments do not change while the
    instance runs.
    """

    def __init__(
        self,
        base_url: str = "http://169.254.169.254",
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=METADATA_TIMEOUT_SECONDS,
            transport=transport,
        )
        self._document: dict[str, Any] | None = None

    def metadata(self) -> dict[str, Any]:
        """Return the full metadata document.

        Raises:
            RemoteAPIError: If the endpoint is unreachable or answers non-200.
        """
        if self._document is not None:
            return self._document

        try:
            response = self._http.get(METADATA_PATH)
        except httpx.HTTPError as e:
            raise RemoteAPIError("get instance metadata", str(e)) from e
        if response.status_code != 200:
            raise RemoteAPIError(
                "get instance metadata",
                f"HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        self._document = response.json()
        return self._document

    def region(self) -> str:
        """Lower-cased region code of the local instance (e.g. "ewr")."""
        region = (self.metadata().get("region") or {}).get("regioncode", "")
        return region.lower()

    def vpc_network_id(self) -> str:
        """ID of the first VPC the local instance is attached to, or ""."""
        for interface in self.metadata().get("interfaces") or []:
            network_id = interface.get("network-v2-id", "")
            if network_id:
                return network_id
        logger.warning("No VPC network found in instance metadata")
        return ""

    def close(self) -> None:
        self._http.close()
