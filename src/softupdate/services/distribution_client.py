"""
Distribution Client - Fetches release files from the distribution server

Handles communication with the remote release host, including:
- Fetching small documents (metadata XML, manifests) in full
- Streaming artifact downloads to disk
"""
from pathlib import Path
from typing import Dict, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
DOWNLOAD_TIMEOUT = 300.0
CHUNK_SIZE = 8192


class TransportError(Exception):
    """Raised when a file cannot be fetched from the distribution server"""

    pass


class DistributionClient:
    """
    Client for the release distribution server

    A single httpx.Client is created lazily and reused for every request.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        download_timeout: float = DOWNLOAD_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize distribution client

        Args:
            timeout: Request timeout in seconds for documents
            download_timeout: Request timeout in seconds for artifact downloads
            transport: Optional httpx transport (used by tests)
        """
        self.timeout = timeout
        self.download_timeout = download_timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def headers(self) -> Dict[str, str]:
        """Get headers for distribution server requests"""
        return {"User-Agent": "softupdate/1.0"}

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.timeout),
                headers=self.headers,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self):
        """Close the HTTP client"""
        if self._client and not self._client.is_closed:
            self._client.close()
            self._client = None

    def fetch(self, url: str) -> bytes:
        """
        Fetch a document in full

        Raises:
            TransportError: If the request fails or returns an error status
        """
        client = self._get_client()
        try:
            response = client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("fetch_failed", url=url, status_code=e.response.status_code)
            raise TransportError(f"Fetch failed: {e.response.status_code} for {url}") from e
        except httpx.RequestError as e:
            logger.error("fetch_request_error", url=url, error=str(e))
            raise TransportError(f"Request failed: {str(e)}") from e

        logger.debug("fetch_complete", url=url, size=len(response.content))
        return response.content

    def download(self, url: str, destination: Path) -> int:
        """
        Stream a file to disk

        The destination is removed again if the transfer fails.

        Returns:
            Number of bytes written

        Raises:
            TransportError: If the download fails
        """
        logger.info("downloading_artifact", url=url, destination=str(destination))
        destination.parent.mkdir(parents=True, exist_ok=True)
        client = self._get_client()
        downloaded = 0

        try:
            with client.stream("GET", url, timeout=httpx.Timeout(self.download_timeout)) as response:
                response.raise_for_status()
                with open(destination, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=CHUNK_SIZE):
                        f.write(chunk)
                        downloaded += len(chunk)
        except httpx.HTTPStatusError as e:
            destination.unlink(missing_ok=True)
            raise TransportError(f"Download failed: {e.response.status_code} for {url}") from e
        except (httpx.RequestError, OSError) as e:
            destination.unlink(missing_ok=True)
            raise TransportError(f"Download failed: {str(e)}") from e

        logger.info("download_complete", url=url, size=downloaded)
        return downloaded
