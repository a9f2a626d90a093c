from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)


class HttpByteFetcher:
    def __init__(
        self,
        *,
        timeout_seconds: float = 60.0,
        max_bytes: int | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes
        self._transport = transport

    def fetch(self, url: str) -> bytes:
        with httpx.Client(
            timeout=max(1.0, float(self.timeout_seconds)),
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            response = client.get(url)
            response.raise_for_status()
            data = response.content

        if self.max_bytes is not None and len(data) > int(self.max_bytes):
            raise ValueError(f'response from {url} is {len(data)} bytes, max allowed {int(self.max_bytes)}')
        logger.debug('Fetched %d bytes from %s', len(data), url)
        return data
