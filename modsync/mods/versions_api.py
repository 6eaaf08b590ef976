"""Backend API client for mod version info and download URLs."""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from modsync.storage.models import RemoteVersion

logger = logging.getLogger(__name__)

# Server-side limit on ids per batch-versions request
MAX_BATCH_SIZE = 100


class VersionsAPIError(Exception):
    """Raised when the backend request fails or returns an error payload."""


@dataclass
class DownloadInfo:
    """Where to download a specific mod file from."""

    mod_id: int
    mod_name: str
    file_id: int
    file_name: str
    download_url: str
    file_size: int
    display_name: str = ""


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class ModVersionsAPI:
    """
    Client for the mod backend.

    The backend proxies the marketplace and needs the user's
    marketplace API key in the ``X-CurseForge-API-Key`` header.
    """

    API_KEY_HEADER = "X-CurseForge-API-Key"
    USER_AGENT = "modsync/0.1"

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        batch_size: int = MAX_BATCH_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Backend root URL
            api_key: Marketplace API key
            timeout: Request timeout in seconds
            batch_size: Mod ids per batch-versions request (1-100)
            transport: Custom httpx transport
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"User-Agent": self.USER_AGENT}
            if self.api_key:
                headers[self.API_KEY_HEADER] = self.api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, payload: dict[str, Any]) -> Any:
        if not self.api_key:
            raise VersionsAPIError("Marketplace API key not configured (api.api_key)")

        client = await self._get_client()
        try:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise VersionsAPIError(
                f"{url} failed with status {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise VersionsAPIError(f"{url} failed: {e}") from e

        if not body.get("success", False):
            raise VersionsAPIError(body.get("error") or body.get("message") or f"{url} failed")
        return body.get("data")

    async def get_latest_versions(self, mod_ids: Sequence[int]) -> dict[int, RemoteVersion]:
        """
        Get the latest file of each mod.

        Requests are chunked to at most ``batch_size`` ids. Mods the
        backend does not know are absent from the result.

        Args:
            mod_ids: Marketplace mod ids

        Returns:
            Mapping of mod id to its latest version

        Raises:
            VersionsAPIError: If any request fails
        """
        ids = list(dict.fromkeys(mod_ids))
        versions: dict[int, RemoteVersion] = {}

        for start in range(0, len(ids), self.batch_size):
            chunk = ids[start : start + self.batch_size]
            data = await self._post("/api/v1/curseforge/batch-versions", {"modIds": chunk}) or {}

            for key, item in data.items():
                if not item:
                    continue
                try:
                    mod_id = int(item.get("modId", key))
                    versions[mod_id] = RemoteVersion(
                        mod_id=mod_id,
                        latest_version_id=int(item["latestFileId"]),
                        latest_version_name=item.get("latestDisplayName") or "",
                        file_name=item.get("latestFileName") or "",
                        file_date=_parse_date(item.get("latestFileDate")),
                        file_size=int(item.get("latestFileSize") or 0),
                    )
                except (KeyError, TypeError, ValueError):
                    logger.warning(f"Skipping malformed version entry for mod {key}")
                    continue

        return versions

    async def get_download_info(self, mod_id: int, file_id: int | None = None) -> DownloadInfo:
        """
        Resolve the download URL of a mod file.

        Args:
            mod_id: Marketplace mod id
            file_id: Specific file; the latest file if omitted

        Raises:
            VersionsAPIError: If the request fails or the payload is incomplete
        """
        payload: dict[str, Any] = {"modId": mod_id}
        if file_id is not None:
            payload["fileId"] = file_id

        data = await self._post("/api/v1/curseforge/download-url", payload)
        try:
            return DownloadInfo(
                mod_id=int(data.get("modId", mod_id)),
                mod_name=data.get("modName") or f"Mod {mod_id}",
                file_id=int(data["fileId"]),
                file_name=data["fileName"],
                download_url=data["downloadUrl"],
                file_size=int(data.get("fileSize") or 0),
                display_name=data.get("displayName") or "",
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise VersionsAPIError(f"Incomplete download info for mod {mod_id}") from e

    async def download_file(
        self,
        info: DownloadInfo,
        destination: Path,
        on_progress: Callable[[int, int], Any] | None = None,
    ) -> Path:
        """
        Download a mod file, following redirects.

        Args:
            info: Download info from get_download_info()
            destination: Directory to save to
            on_progress: Optional callback receiving (downloaded, total) bytes

        Returns:
            Path to downloaded file

        Raises:
            VersionsAPIError: If the download fails
        """
        client = await self._get_client()
        destination.mkdir(parents=True, exist_ok=True)
        file_path = destination / Path(info.file_name).name

        try:
            async with client.stream("GET", info.download_url, follow_redirects=True) as response:
                response.raise_for_status()
                total_size = int(response.headers.get("content-length", info.file_size))
                downloaded = 0

                with open(file_path, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=8192):
                        f.write(chunk)
                        downloaded += len(chunk)

                        if on_progress:
                            on_progress(downloaded, total_size)
        except httpx.HTTPStatusError as e:
            raise VersionsAPIError(
                f"Download failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise VersionsAPIError(f"Download failed: {e}") from e

        return file_path

    async def __aenter__(self) -> "ModVersionsAPI":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args) -> None:
        """Async context manager exit."""
        await self.close()
