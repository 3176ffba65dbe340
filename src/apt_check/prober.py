from __future__ import annotations

import asyncio
import logging
import random

import httpx

from apt_check.cache import ProbeCache
from apt_check.models import ProbeError

logger = logging.getLogger(__name__)


class HttpArtifactProber:
    """
    通过 HEAD 请求确认制品 URL 可达（不校验内容）。
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        retries: int = 2,
        cache: ProbeCache | None = None,
        cache_ttl_s: int = 24 * 60 * 60,
        refresh: bool = False,
    ) -> None:
        self._client = client
        self._retries = retries
        self._cache = cache
        self._cache_ttl_s = cache_ttl_s
        self._refresh = refresh
        self.requests = 0
        self.cache_hits = 0

    async def _status(self, url: str) -> int:
        """
        返回 URL 的 HTTP 状态码；服务器不支持 HEAD 时改用流式 GET 且不读取正文。
        """
        self.requests += 1
        resp = await self._client.head(url)
        if resp.status_code != 405:
            return resp.status_code
        async with self._client.stream("GET", url) as streamed:
            return streamed.status_code

    async def probe(self, url: str) -> None:
        """
        探测 URL，不可达时抛出 ProbeError。
        """
        if self._cache is not None and not self._refresh and self._cache.is_known_good(url, ttl_s=self._cache_ttl_s):
            self.cache_hits += 1
            return

        attempt = 0
        while True:
            try:
                status = await self._status(url)
                break
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                if attempt >= self._retries:
                    if self._cache is not None:
                        self._cache.forget(url)
                    raise ProbeError(f"{url}: {str(exc) or type(exc).__name__}") from exc
                backoff = (2**attempt) * 0.25 + random.random() * 0.25
                attempt += 1
                await asyncio.sleep(backoff)

        if status >= 400:
            if self._cache is not None:
                self._cache.forget(url)
            raise ProbeError(f"{url}: http {status}")

        if self._cache is not None:
            self._cache.mark_good(url)
        logger.debug("制品 %s 可达（http %s）。", url, status)
