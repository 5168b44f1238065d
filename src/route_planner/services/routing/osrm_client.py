"""HTTP client for the OSRM table service."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import httpx

from ...config import settings
from ...errors import UnavailableError

# OSRM table endpoint has URL length limits. Source and destination chunks are
# combined, so 80 means up to 160 coordinates per URL.
DEFAULT_MAX_COORDINATES_PER_REQUEST = 80
DEFAULT_MAX_PARALLEL_REQUESTS = 8

logger = logging.getLogger(__name__)


class OSRMClient:
    def __init__(
        self,
        base_url: str | None = None,
        profile: str | None = None,
        timeout: float = 30.0,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        max_coordinates_per_request: int = DEFAULT_MAX_COORDINATES_PER_REQUEST,
        max_parallel_requests: int = DEFAULT_MAX_PARALLEL_REQUESTS,
    ) -> None:
        self.base_url = base_url or settings.osrm_base_url
        if not self.base_url:
            raise ValueError("OSRM base URL is not configured.")
        self.profile = profile or settings.osrm_profile
        self.max_retries = max_retries if max_retries is not None else settings.osrm_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.osrm_backoff_seconds
        self.max_coordinates_per_request = max_coordinates_per_request
        self.max_parallel_requests = max_parallel_requests
        self.timeout = timeout

    def _get_client(self) -> httpx.Client:
        """One client per request so worker threads never share a connection pool."""
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            limits=httpx.Limits(max_connections=1, max_keepalive_connections=0),
        )

    def _table_single_request(
        self,
        coordinates: Sequence[tuple[float, float]],
        sources: Sequence[int] | None = None,
        destinations: Sequence[int] | None = None,
    ) -> dict:
        """Make a single OSRM table request for a subset of (lat, lon) coordinates."""
        if len(coordinates) < 1:
            raise ValueError("At least one coordinate is required for OSRM table.")

        coordinate_str = ";".join(f"{lon},{lat}" for lat, lon in coordinates)
        if sources is None:
            sources = list(range(len(coordinates)))
        if destinations is None:
            destinations = list(range(len(coordinates)))

        params = {
            "annotations": "duration,distance",
            "sources": ";".join(str(i) for i in sources),
            "destinations": ";".join(str(i) for i in destinations),
        }
        url = f"{self.base_url}/table/v1/{self.profile}/{coordinate_str}"

        client = self._get_client()
        try:
            attempt = 0
            while True:
                try:
                    response = client.get(url, params=params)
                    response.raise_for_status()
                    data = response.json()
                    if "durations" not in data or "distances" not in data:
                        raise ValueError("OSRM response missing durations/distances.")
                    return data
                except httpx.HTTPStatusError as e:
                    if e.response.status_code == 414:
                        raise ValueError(
                            f"OSRM request URL too large ({len(coordinates)} coordinates). "
                            f"Try reducing max_coordinates_per_request (current: {self.max_coordinates_per_request})"
                        ) from e
                    attempt += 1
                    if attempt > self.max_retries:
                        raise UnavailableError(f"OSRM table request failed: {e}") from e
                    time.sleep(self.backoff_seconds * attempt)
                except (httpx.TimeoutException, httpx.ConnectError, httpx.NetworkError, OSError) as e:
                    attempt += 1
                    if attempt > self.max_retries:
                        logger.warning(f"OSRM request failed after {self.max_retries} retries: {e}")
                        raise UnavailableError(
                            f"Failed to reach OSRM service at {self.base_url}: {e}"
                        ) from e
                    wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.debug(f"OSRM network error, retrying in {wait_time:.1f}s (attempt {attempt}/{self.max_retries})")
                    time.sleep(wait_time)
        finally:
            client.close()

    def table(self, coordinates: Sequence[tuple[float, float]]) -> dict:
        """Get the duration (s) / distance (m) matrix for (lat, lon) coordinates.

        Coordinate lists larger than one request are split into chunks that are
        fetched in parallel and stitched back into a single square matrix.
        """
        if len(coordinates) < 2:
            raise ValueError("At least two coordinates are required for OSRM table.")

        if len(coordinates) <= self.max_coordinates_per_request:
            return self._table_single_request(coordinates)

        chunk_size = self.max_coordinates_per_request
        ranges = [(i, min(i + chunk_size, len(coordinates))) for i in range(0, len(coordinates), chunk_size)]
        n = len(coordinates)
        durations: list[list[float | None]] = [[None] * n for _ in range(n)]
        distances: list[list[float | None]] = [[None] * n for _ in range(n)]

        def fetch(src: tuple[int, int], dst: tuple[int, int]) -> tuple[tuple[int, int], tuple[int, int], dict]:
            src_coords = list(coordinates[src[0]:src[1]])
            dst_coords = list(coordinates[dst[0]:dst[1]])
            combined = src_coords + dst_coords
            result = self._table_single_request(
                combined,
                list(range(len(src_coords))),
                list(range(len(src_coords), len(combined))),
            )
            return src, dst, result

        started = time.time()
        logger.info(f"Chunking OSRM table request: {n} coordinates in {len(ranges) ** 2} requests")
        with ThreadPoolExecutor(max_workers=self.max_parallel_requests) as executor:
            futures = [executor.submit(fetch, src, dst) for src in ranges for dst in ranges]
            # Any chunk failure propagates: a partial matrix is never returned.
            for future in futures:
                (src_start, _), (dst_start, _), result = future.result()
                for i, row in enumerate(result["durations"]):
                    for j, value in enumerate(row):
                        durations[src_start + i][dst_start + j] = value
                        distances[src_start + i][dst_start + j] = result["distances"][i][j]

        logger.info(f"Completed chunked OSRM table request in {time.time() - started:.2f}s")
        return {"durations": durations, "distances": distances}


def check_health(base_url: str | None = None) -> bool:
    """Check OSRM service health with a minimal two-coordinate table request."""
    base = base_url or settings.osrm_base_url
    if not base:
        return False
    try:
        test_coords = "44.827100,41.715100;44.783300,41.709100"
        url = f"{base}/table/v1/{settings.osrm_profile}/{test_coords}"
        response = httpx.get(url, params={"annotations": "duration"}, timeout=5.0)
        response.raise_for_status()
        data = response.json()
        return "durations" in data and isinstance(data.get("durations"), list)
    except (httpx.HTTPError, ValueError):
        return False
