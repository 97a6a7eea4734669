"""Gateway metrics capture."""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
import structlog

from harness.errors import MetricsFetchError


logger = structlog.get_logger()


@dataclass(frozen=True)
class MetricsSnapshot:
    """Raw metrics body as served by the gateway, plus where it was saved."""
    url: str
    status_code: int
    body: str
    path: Path


class MetricsCollector:
    """Fetches the gateway's /metrics page and stores it next to the logs."""

    def __init__(
        self,
        url: str,
        output_path: Path,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.output_path = Path(output_path)
        self.timeout = timeout
        self._transport = transport

    async def collect(self) -> MetricsSnapshot:
        """Fetch and persist the snapshot. The body is not parsed."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise MetricsFetchError(
                f"Metrics endpoint returned {e.response.status_code}",
                url=self.url,
            )
        except httpx.HTTPError as e:
            raise MetricsFetchError(f"Metrics fetch failed: {e}", url=self.url)

        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self.output_path.write_text(response.text)

        logger.info(
            "metrics_collected",
            url=self.url,
            bytes=len(response.content),
            path=str(self.output_path),
        )
        return MetricsSnapshot(
            url=self.url,
            status_code=response.status_code,
            body=response.text,
            path=self.output_path,
        )
