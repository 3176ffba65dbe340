from __future__ import annotations

import asyncio
import base64
import gzip
import hashlib
import logging
import lzma
import random
from dataclasses import dataclass

import httpx

from apt_check.index import PackageIndex, SourceIndex, parse_packages, parse_sources
from apt_check.models import Architecture, FetchError, ReleaseFetchError, SignatureError
from apt_check.release import Release, flat_root, parse_release
from apt_check.signing import verify_inrelease

logger = logging.getLogger(__name__)

_COMPRESSIONS = (".xz", ".gz", "")


@dataclass(frozen=True, slots=True)
class IndexAuth:
    """
    私有仓库认证配置。
    """

    bearer_token: str | None = None
    basic_username: str | None = None
    basic_password: str | None = None


@dataclass(frozen=True, slots=True)
class IndexSettings:
    """
    APT 仓库访问配置。
    """

    url: str = "http://archive.ubuntu.com/ubuntu"
    dist: str = "jammy"
    timeout_s: float = 30.0
    retries: int = 2
    auth: IndexAuth | None = None
    path: str | None = None
    key_url: str | None = None
    raw_key: bool = False


def _build_headers(auth: IndexAuth | None) -> dict[str, str]:
    """
    基于认证配置构造 HTTP Header。
    """
    headers: dict[str, str] = {"User-Agent": "apt-check"}
    if not auth:
        return headers

    if auth.bearer_token:
        headers["Authorization"] = f"Bearer {auth.bearer_token}"
        return headers

    if auth.basic_username is not None and auth.basic_password is not None:
        token = f"{auth.basic_username}:{auth.basic_password}".encode("utf-8")
        headers["Authorization"] = f"Basic {base64.b64encode(token).decode('ascii')}"
        return headers

    return headers


async def _request_bytes(
    client: httpx.AsyncClient,
    url: str,
    *,
    retries: int,
) -> tuple[bytes | None, int | None, str | None]:
    """
    请求原始内容并返回 (content, status_code, error)。
    """
    attempt = 0
    while True:
        try:
            resp = await client.get(url)
            if resp.status_code == 404:
                return None, 404, None
            if resp.status_code >= 400:
                return None, resp.status_code, f"http {resp.status_code}"
            return resp.content, resp.status_code, None
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            if attempt >= retries:
                return None, None, str(exc) or type(exc).__name__
            backoff = (2**attempt) * 0.25 + random.random() * 0.25
            attempt += 1
            logger.debug("请求 %s 失败（%s），%.2fs 后重试。", url, exc, backoff)
            await asyncio.sleep(backoff)


def _decompress(content: bytes, suffix: str) -> bytes:
    """
    按文件后缀解压索引内容。
    """
    try:
        if suffix == ".xz":
            return lzma.decompress(content)
        if suffix == ".gz":
            return gzip.decompress(content)
    except (lzma.LZMAError, OSError, EOFError) as exc:
        raise FetchError(f"cannot decompress {suffix} index: {exc}") from exc
    return content


def _candidate_paths(release: Release, stem: str) -> list[str]:
    """
    返回索引文件的候选相对路径：Release 中登记的变体优先，其余按 xz/gz/plain 顺序。
    """
    all_paths = [f"{stem}{suffix}" for suffix in _COMPRESSIONS]
    listed = [p for p in all_paths if release.file(p) is not None]
    return listed + [p for p in all_paths if p not in listed]


def create_async_client(settings: IndexSettings) -> httpx.AsyncClient:
    """
    创建用于访问仓库的 AsyncClient。
    """
    headers = _build_headers(settings.auth)
    timeout = httpx.Timeout(settings.timeout_s)
    return httpx.AsyncClient(headers=headers, timeout=timeout, follow_redirects=True)


def release_root(settings: IndexSettings) -> str:
    """
    Release 所在目录：常规仓库为 <url>/dists/<dist>，平铺仓库为 <url>/<path>。
    """
    if settings.path is not None:
        return flat_root(settings.url, settings.path)
    return f"{settings.url.rstrip('/')}/dists/{settings.dist}"


async def fetch_signing_key(url: str, *, client: httpx.AsyncClient, retries: int) -> bytes:
    """
    下载 InRelease 的签名公钥。
    """
    content, status, error = await _request_bytes(client, url, retries=retries)
    if content is None:
        raise SignatureError(f"cannot fetch signing key from {url}: {error or f'http {status}'}")
    return content


async def fetch_release(settings: IndexSettings, *, client: httpx.AsyncClient) -> Release:
    """
    获取并解析 InRelease（不存在时回退到 Release）。

    配置了签名密钥时只接受 InRelease，并在解析前校验其签名。
    """
    base = release_root(settings)
    key = None
    if settings.key_url:
        key = await fetch_signing_key(settings.key_url, client=client, retries=settings.retries)
    names = ("InRelease",) if key is not None else ("InRelease", "Release")

    last_error = "not found"
    for name in names:
        url = f"{base}/{name}"
        content, status, error = await _request_bytes(client, url, retries=settings.retries)
        if content is None:
            last_error = error or f"http {status}"
            logger.debug("获取 %s 失败：%s", url, last_error)
            continue
        if key is not None:
            await asyncio.to_thread(verify_inrelease, content, key, armored=not settings.raw_key)
        return parse_release(
            content.decode("utf-8", errors="replace"),
            base_url=settings.url,
            dist=settings.dist,
            path=settings.path,
        )

    raise ReleaseFetchError(f"cannot fetch {' or '.join(names)} from {base}: {last_error}")


class HttpIndexProvider:
    """
    通过 HTTP 获取 Packages/Sources 索引并构建只读索引。
    """

    def __init__(self, settings: IndexSettings, client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._client = client

    async def _fetch_index_text(self, release: Release, stem: str) -> str:
        """
        下载索引文件的某个压缩变体，校验 SHA256 后返回解压文本。
        """
        errors: list[str] = []
        for path in _candidate_paths(release, stem):
            url = f"{release.index_url()}/{path}"
            content, status, error = await _request_bytes(self._client, url, retries=self._settings.retries)
            if content is None:
                errors.append(f"{path}: {error or f'http {status}'}")
                continue

            expected = release.file(path)
            if expected is not None and expected.sha256:
                actual = hashlib.sha256(content).hexdigest()
                if actual != expected.sha256:
                    raise FetchError(f"{path}: sha256 mismatch (expected {expected.sha256}, got {actual})")

            suffix = next((s for s in _COMPRESSIONS if s and path.endswith(s)), "")
            return _decompress(content, suffix).decode("utf-8", errors="replace")

        raise FetchError(f"cannot fetch {stem}: {'; '.join(errors)}")

    async def build_source_index(self, release: Release, component: str) -> SourceIndex:
        stem = "Sources" if release.flat else f"{component}/source/Sources"
        text = await self._fetch_index_text(release, stem)
        return parse_sources(text, component=component, base_url=release.base_url)

    async def build_package_index(
        self, release: Release, component: str, architecture: Architecture
    ) -> PackageIndex:
        if release.flat:
            # 平铺仓库的 Packages 包含全部架构
            text = await self._fetch_index_text(release, "Packages")
        else:
            text = await self._fetch_index_text(release, f"{component}/binary-{architecture.value}/Packages")
        return parse_packages(
            text,
            component=component,
            architecture=architecture,
            base_url=release.base_url,
            only_architecture=release.flat,
        )
