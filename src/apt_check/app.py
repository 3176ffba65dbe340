from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TaskID, TextColumn

from apt_check.cache import ProbeCache, default_cache_path
from apt_check.checker import ConsistencyChecker
from apt_check.config import AppConfig
from apt_check.index_client import HttpIndexProvider, create_async_client, fetch_release
from apt_check.prober import HttpArtifactProber
from apt_check.report import Report

logger = logging.getLogger(__name__)


def _log_distro(config: AppConfig) -> None:
    index = config.index
    auth = "无认证"
    if index.auth is not None:
        auth = "Bearer Token" if index.auth.bearer_token else "Basic 认证"
    where = f"路径：{index.path}" if index.path is not None else f"发行版：{index.dist}"
    logger.info("仓库：%s  %s  认证：%s", index.url, where, auth)
    if index.key_url is None:
        logger.warning("未指定签名密钥，InRelease 签名不会被校验！")
    elif index.raw_key:
        logger.info("签名密钥（二进制）：%s", index.key_url)
    else:
        logger.info("签名密钥（ASCII armor）：%s", index.key_url)


async def check_repository(
    config: AppConfig,
    *,
    on_units_start: Callable[[int], Any] | None = None,
    on_unit_complete: Callable[[], Any] | None = None,
) -> tuple[bool, Report]:
    """
    获取 Release 并对所选组件/架构执行一致性检查。

    Release 无法获取或架构名非法时抛出 HardInputError，此时不会产生报告。
    """
    _log_distro(config)

    cache: ProbeCache | None = None
    if config.check_files and config.use_cache:
        cache = ProbeCache(default_cache_path())

    try:
        async with create_async_client(config.index) as client:
            logger.debug("解析 InRelease...")
            release = await fetch_release(config.index, client=client)

            prober = None
            if config.check_files:
                prober = HttpArtifactProber(
                    client,
                    retries=config.index.retries,
                    cache=cache,
                    cache_ttl_s=config.cache_ttl_s,
                    refresh=config.refresh,
                )

            checker = ConsistencyChecker(
                release,
                HttpIndexProvider(config.index, client),
                prober,
                components=config.components,
                architectures=config.architectures,
                check_files=config.check_files,
                max_concurrency=config.max_concurrency,
                probe_concurrency=config.probe_concurrency,
                url=config.index.url,
                dist=config.index.dist if config.index.path is None else config.index.path,
                on_unit_complete=on_unit_complete,
            )
            logger.debug(
                "检查组件 %s 与架构 %s...",
                list(checker.components),
                [a.value for a in checker.architectures],
            )
            if on_units_start is not None:
                on_units_start(checker.total_units)

            result = await checker.run()
            if prober is not None:
                logger.info("探测制品：请求 %d 次，缓存命中 %d 次。", prober.requests, prober.cache_hits)
            return result
    finally:
        if cache is not None:
            cache.close()


class _UnitProgress:
    """
    检查单元的进度条；总数未知（0）时不显示。
    """

    def __init__(self, console: Console) -> None:
        self._console = console
        self._progress: Progress | None = None
        self._task: TaskID | None = None

    def start(self, total: int) -> None:
        if total <= 0:
            return
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=self._console,
            transient=True,
        )
        self._progress.start()
        self._task = self._progress.add_task("检查索引", total=total)

    def advance(self) -> None:
        if self._progress is not None and self._task is not None:
            self._progress.advance(self._task)

    def stop(self) -> None:
        if self._progress is not None:
            self._progress.stop()


def run_check(config: AppConfig, *, console: Console | None = None) -> tuple[bool, Report]:
    """
    同步入口：运行仓库检查（内部使用 asyncio），在 stderr 显示进度条。
    """
    bar = _UnitProgress(console or Console(stderr=True))
    try:
        return asyncio.run(check_repository(config, on_units_start=bar.start, on_unit_complete=bar.advance))
    finally:
        bar.stop()
