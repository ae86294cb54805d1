############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# capability_client.py: Client for a node's published capability document
#
############################################################

"""Client for the capability sidecar running on fleet nodes."""

from typing import Optional

import httpx
from pydantic import ValidationError

from fleetrouter.core.schemas import CapabilityDocument
from fleetrouter.core.telemetry.models import CapabilityReport
from fleetrouter.logging_config import get_logger

logger = get_logger(__name__)


class CapabilityClient:
    """
    HTTP client for a node's capability document.

    Nodes self-report their GPU and model configuration through the
    capability sidecar (GET /capability). The prober never scrapes remote
    hardware directly; this document is the only remote capacity source.
    """

    def __init__(
        self,
        capability_url: str,
        timeout: float = 3.0,
        sidecar_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = capability_url
        self.timeout = timeout
        self.sidecar_key = sidecar_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {}
            if self.sidecar_key:
                headers["X-Sidecar-Key"] = self.sidecar_key
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def get_report(self) -> Optional[CapabilityReport]:
        """
        Fetch the capability document.

        Returns:
            CapabilityReport, or None if the document is unavailable
        """
        try:
            client = await self._get_client()
            response = await client.get(self.url)

            if response.status_code != 200:
                logger.debug(
                    "capability_bad_status",
                    url=self.url,
                    status=response.status_code,
                )
                return None

            document = CapabilityDocument.model_validate(response.json())
            return document.to_report()

        except httpx.TimeoutException:
            logger.debug("capability_timeout", url=self.url)
            return None
        except ValidationError as e:
            logger.warning("capability_invalid_document", url=self.url, error=str(e))
            return None
        except Exception as e:
            logger.debug("capability_error", url=self.url, error=str(e))
            return None
