"""Find the best regional server for a cloud-hosted deployment."""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

_SETTINGS_CACHE_SECONDS = 3.0


@dataclass(frozen=True)
class Region:
    """A region as listed in the regions settings."""

    region: str = ""
    url: str = ""
    distance: int = 0

    @classmethod
    def from_json(cls, data: Any) -> "Region":
        if not isinstance(data, dict):
            raise ValueError("region entry must be an object")
        try:
            distance = int(data.get("distance", 0) or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid region distance: {exc}") from exc
        return cls(
            region=str(data.get("region", "")),
            url=str(data.get("url", "")),
            distance=distance,
        )


@dataclass
class _CacheItem:
    regions: List[Region]
    updated_at: float
    region_url_attempts: Dict[str, int] = field(default_factory=dict)


def _decode_regions(body: bytes) -> List[Region]:
    try:
        document = json.loads(body)
    except ValueError as exc:
        raise ValueError(
            f"refreshRegionSettings failed to decode region settings: {exc}"
        ) from exc
    if not isinstance(document, dict):
        raise ValueError("refreshRegionSettings failed to decode region settings: not an object")
    entries = document.get("regions") or []
    if not isinstance(entries, list):
        raise ValueError("refreshRegionSettings failed to decode region settings: bad regions")
    return [Region.from_json(entry) for entry in entries]


class RegionUrlProvider:
    """Caches the region list per cloud hostname and hands out URLs best-first."""

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._cache: Dict[str, _CacheItem] = {}
        self._lock = threading.Lock()

    def refresh_region_settings(self, cloud_hostname: str, token: str) -> None:
        """Fetch the region list unless a fresh copy is cached."""
        with self._lock:
            cached = self._cache.get(cloud_hostname)
        if cached is not None and time.monotonic() - cached.updated_at < _SETTINGS_CACHE_SECONDS:
            return

        request = urllib.request.Request(
            f"https://{cloud_hostname}/settings/regions",
            headers={"Authorization": f"Bearer {token}"},
            method="GET",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                status = response.status
                if status != 200:
                    raise ConnectionError(
                        "refreshRegionSettings failed to fetch region settings. "
                        f"http status: {status}"
                    )
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise ConnectionError(
                "refreshRegionSettings failed to fetch region settings. "
                f"http status: {exc.code} {exc.reason}"
            ) from exc
        except urllib.error.URLError as exc:
            raise ConnectionError(f"refreshRegionSettings request failed: {exc.reason}") from exc

        item = _CacheItem(regions=_decode_regions(body), updated_at=time.monotonic())
        with self._lock:
            self._cache[cloud_hostname] = item

        if not item.regions:
            logger.warning("no regions returned for %s", cloud_hostname)

    def pop_best_url(self, cloud_hostname: str, token: str) -> str:
        """Remove and return the best region URL.

        Raises LookupError once the list is exhausted; call
        refresh_region_settings to repopulate it.
        """
        with self._lock:
            item = self._cache.get(cloud_hostname)
            if item is None or not item.regions:
                raise LookupError("no regions available")
            return item.regions.pop(0).url


def is_cloud(hostname: str) -> bool:
    """Tell whether a hostname belongs to the hosted cloud service."""
    return hostname.endswith("livekit.cloud") or hostname.endswith("livekit.io")


def parse_cloud_url(server_url: str) -> str:
    """Return the hostname of a cloud server URL, raising ValueError otherwise."""
    try:
        hostname = urllib.parse.urlsplit(server_url).hostname or ""
    except ValueError as exc:
        raise ValueError(f"invalid server url ({server_url}): {exc}") from exc
    if not is_cloud(hostname):
        raise ValueError("not a cloud url")
    return hostname