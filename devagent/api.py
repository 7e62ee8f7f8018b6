# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent API Client

Thin aiohttp client for the two RemoteDevAI endpoints the supervisor needs:
the "latest agent version" oracle and artifact downloads.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urljoin

import aiohttp

from . import __version__
from .errors import ApiError, DownloadError

logger = logging.getLogger(__name__)

API_TIMEOUT = 30  # seconds per API request
DOWNLOAD_TIMEOUT = 600  # 10 minutes max for an agent build
DOWNLOAD_CHUNK_SIZE = 65536  # 64KB chunks


@dataclass
class AgentRelease:
    """An agent build published by the update oracle."""
    version: str
    download_url: str
    update_available: bool = False
    release_notes: Optional[str] = None
    sha256: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ApiClient:
    """Client for the RemoteDevAI agent endpoints.

    Usage:
        client = ApiClient("https://api.remotedevai.com", token="...")
        release = await client.check_agent_update("1.0.0")
        await client.download_file(release.download_url, Path("/tmp/agent.tar.gz"))
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: int = API_TIMEOUT):
        self.base_url = base_url.rstrip("/") + "/"
        self.token = token
        self.timeout = timeout

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": f"devagent/{__version__}",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    async def check_agent_update(self, current_version: str) -> AgentRelease:
        """Ask the oracle for the latest agent build relative to current_version.

        Raises:
            ApiError: Transport failure, HTTP error or unusable payload.
        """
        url = self._url("agents/updates")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    params={"currentVersion": current_version},
                    headers=self._get_headers(),
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    if resp.status != 200:
                        raise ApiError(f"Update check failed: HTTP {resp.status}", status=resp.status)
                    payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Update check request failed: %s", e)
            raise ApiError(f"Update check request failed: {e}") from e
        except ValueError as e:
            raise ApiError(f"Update check returned invalid JSON: {e}") from e

        return self._parse_release(payload)

    def _parse_release(self, payload: Any) -> AgentRelease:
        if not isinstance(payload, dict) or not payload.get("success") or not isinstance(payload.get("data"), dict):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ApiError(message or "Unable to fetch agent version information")

        data = payload["data"]
        latest = data.get("latestVersion")
        if not latest:
            raise ApiError("Update response is missing latestVersion")

        download_url = data.get("downloadUrl") or ""
        if download_url and not download_url.startswith(("http://", "https://")):
            download_url = self._url(download_url)

        return AgentRelease(
            version=str(latest).lstrip("v"),
            download_url=download_url,
            update_available=bool(data.get("updateAvailable", False)),
            release_notes=data.get("releaseNotes") or None,
            sha256=(data.get("sha256") or None),
        )

    async def download_file(
        self,
        url: str,
        dest: Path,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> int:
        """Stream url into dest.

        Args:
            url: Artifact URL.
            dest: File to create (overwritten).
            on_progress: Called with the percentage downloaded when the
                         size is known.

        Returns:
            Number of bytes written.

        Raises:
            DownloadError: Transport, HTTP or disk failure.
        """
        downloaded = 0
        last_percent = -1
        try:
            async with aiohttp.ClientSession() as session:
                timeout = aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT)
                async with session.get(url, headers=self._get_headers(), timeout=timeout) as resp:
                    if resp.status != 200:
                        raise DownloadError(f"Download failed: HTTP {resp.status} {resp.reason}")

                    total_size = int(resp.headers.get("Content-Length", 0))
                    with open(dest, "wb") as f:
                        async for chunk in resp.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
                            downloaded += len(chunk)
                            if on_progress and total_size > 0:
                                percent = int(downloaded * 100 / total_size)
                                if percent != last_percent:
                                    last_percent = percent
                                    on_progress(percent)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadError(f"Download failed: {e}") from e
        except OSError as e:
            raise DownloadError(f"Cannot write download to {dest}: {e}") from e

        logger.info("Downloaded %s (%.1f MB)", dest.name, downloaded / (1024 * 1024))
        return downloaded
