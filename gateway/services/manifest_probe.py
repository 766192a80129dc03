"""Reachability check for remote manifests before the engine is started."""

import logging
from typing import Optional

import httpx

from gateway.exceptions import SourceFetchError

logger = logging.getLogger(__name__)


class ManifestProbe:
    """Issues a GET against a source URL and checks for a 2xx answer.

    Only the response head is read; the body is never downloaded.
    """

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def check(self, url: str, *, request_id: str = "-") -> int:
        """Probe a URL.

        Returns:
            The HTTP status code

        Raises:
            SourceFetchError: On network errors or a non-2xx status
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    status = response.status_code
        except httpx.HTTPError as e:
            logger.warning("[%s] Source probe failed: %s", request_id, e)
            raise SourceFetchError(f"Failed to fetch remote source: {type(e).__name__}") from e

        if not 200 <= status < 300:
            logger.warning("[%s] Source probe returned HTTP %d", request_id, status)
            raise SourceFetchError(f"Failed to fetch remote source: HTTP {status}")
        logger.debug("[%s] Source probe OK (HTTP %d)", request_id, status)
        return status
