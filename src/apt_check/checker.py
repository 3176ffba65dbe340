from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Sequence
from typing import Any, Callable, Protocol

from apt_check.index import PackageIndex, SourceIndex
from apt_check.models import Architecture, IssueKind, PackageEntry, VersionConstraint, VersionRelation
from apt_check.report import Report, ReportAggregator

logger = logging.getLogger(__name__)


class ReleaseDescriptor(Protocol):
    components: Sequence[str]
    architectures: Sequence[Architecture]

    def check_compliance(self) -> None: ...


class IndexProvider(Protocol):
    """
    构建索引的外部协作者；方法可以是同步函数或协程。
    """

    def build_source_index(self, release: Any, component: str) -> Any: ...

    def build_package_index(self, release: Any, component: str, architecture: Architecture) -> Any: ...


class ArtifactProber(Protocol):
    def probe(self, url: str) -> Any: ...


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    """
    调用同步或异步的协作者；同步调用放到线程中执行，避免阻塞事件循环。
    """
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        return await result
    return result


def select_components(release: ReleaseDescriptor, requested: Sequence[str]) -> tuple[str, ...]:
    """
    未指定组件时使用 Release 中的全部组件。
    """
    chosen = list(requested) if requested else list(release.components)
    return tuple(dict.fromkeys(chosen))


def select_architectures(
    release: ReleaseDescriptor, requested: Sequence[str | Architecture]
) -> tuple[Architecture, ...]:
    """
    未指定架构时使用 Release 中的全部架构；无法识别的架构名抛出 InvalidArchitectureError。
    """
    if not requested:
        return tuple(dict.fromkeys(release.architectures))
    parsed = [a if isinstance(a, Architecture) else Architecture.parse(a) for a in requested]
    return tuple(dict.fromkeys(parsed))


class ConsistencyChecker:
    """
    APT 仓库一致性检查：先检查各组件的源码索引，再检查各 (组件, 架构) 的二进制索引。

    每个组件或 (组件, 架构) 单元的异常都在单元边界转换为 Issue，不会中断整次检查；
    取消（CancelledError）不会被记录为发现，而是向上传播。
    """

    def __init__(
        self,
        release: ReleaseDescriptor,
        provider: IndexProvider,
        prober: ArtifactProber | None = None,
        *,
        components: Sequence[str] = (),
        architectures: Sequence[str | Architecture] = (),
        check_files: bool = False,
        max_concurrency: int = 4,
        probe_concurrency: int = 16,
        url: str = "",
        dist: str = "",
        on_unit_complete: Callable[[], Any] | None = None,
    ) -> None:
        if check_files and prober is None:
            raise ValueError("check_files requires an artifact prober")

        self._release = release
        self._provider = provider
        self._prober = prober
        self._check_files = check_files
        self._url = url
        self._dist = dist
        self._on_unit_complete = on_unit_complete
        self._max_concurrency = max(1, max_concurrency)
        self._probe_concurrency = max(1, probe_concurrency)

        self.components = select_components(release, components)
        self.architectures = select_architectures(release, architectures)
        self._findings = ReportAggregator(self.components, self.architectures)
        self._report: Report | None = None
        self._started = False

    @property
    def binary_architectures(self) -> tuple[Architecture, ...]:
        return tuple(a for a in self.architectures if a is not Architecture.SOURCE)

    @property
    def total_units(self) -> int:
        return len(self.components) * (1 + len(self.binary_architectures))

    @property
    def report(self) -> Report | None:
        return self._report

    async def run(self) -> tuple[bool, Report]:
        """
        执行一次完整检查，返回 (是否无发现, 报告)。每个实例只能运行一次。
        """
        if self._started:
            raise RuntimeError("a checker instance runs only once")
        self._started = True

        self._unit_sem = asyncio.Semaphore(self._max_concurrency)
        self._probe_sem = asyncio.Semaphore(self._probe_concurrency)

        logger.info("检查 InRelease 是否符合 Debian 规范...")
        try:
            self._release.check_compliance()
        except Exception as exc:
            logger.warning("InRelease 不符合 Debian 规范：%s", exc)
        else:
            logger.info("InRelease 符合 Debian 规范。")

        logger.info("检查组件 %s 的源码索引...", ", ".join(self.components))
        built = await asyncio.gather(*(self._source_unit(c) for c in self.components))
        source_indices = {c: index for c, index in zip(self.components, built) if index is not None}

        logger.info(
            "检查组件 %s 在架构 %s 上的二进制索引...",
            ", ".join(self.components),
            ", ".join(a.value for a in self.binary_architectures),
        )
        await asyncio.gather(
            *(
                self._binary_unit(c, a, source_indices.get(c))
                for c in self.components
                for a in self.binary_architectures
            )
        )

        logger.info("检查跨组件依赖...")
        self._cross_check()

        issues, dependencies, sources = self._findings.counts()
        logger.info("发现 %d 个问题。", issues)
        logger.info("发现 %d 个缺失的二进制依赖。", dependencies)
        logger.info("发现 %d 个缺失的源码包。", sources)

        report = self._findings.freeze(url=self._url, dist=self._dist, check_files=self._check_files)
        self._report = report
        return report.success, report

    def _cross_check(self) -> None:
        # TODO: look up missing dependencies and sources in the other selected components.
        return None

    def _unit_done(self) -> None:
        if self._on_unit_complete is not None:
            self._on_unit_complete()

    async def _source_unit(self, component: str) -> SourceIndex | None:
        async with self._unit_sem:
            try:
                index = await self._check_source_component(component)
            except Exception as exc:
                message = f"检查组件 {component} 的源码失败：{exc}"
                logger.error(message)
                self._findings.add_issue(component, Architecture.SOURCE, IssueKind.FETCH_FAILURE, message)
                index = None
        self._unit_done()
        return index

    async def _binary_unit(
        self, component: str, architecture: Architecture, source_index: SourceIndex | None
    ) -> None:
        async with self._unit_sem:
            try:
                await self._check_binary_component(component, architecture, source_index)
            except Exception as exc:
                message = f"检查组件 {component} 的架构 {architecture.value} 失败：{exc}"
                logger.error(message)
                self._findings.add_issue(component, architecture, IssueKind.FETCH_FAILURE, message)
        self._unit_done()

    async def _probe(self, component: str, url: str, owner: str) -> None:
        """
        探测单个制品；失败记录为架构 SOURCE 的 Issue，不影响其他检查。
        """
        async with self._probe_sem:
            try:
                await _call(self._prober.probe, url)
            except Exception as exc:
                message = f"{owner} 的文件 {url} 已失效：{exc}"
                logger.error(message)
                self._findings.add_issue(component, Architecture.SOURCE, IssueKind.PROBE_FAILURE, message)

    async def _probe_all(self, component: str, targets: list[tuple[str, str]]) -> None:
        if targets:
            await asyncio.gather(*(self._probe(component, url, owner) for url, owner in targets))

    async def _check_source_component(self, component: str) -> SourceIndex:
        index: SourceIndex = await _call(self._provider.build_source_index, self._release, component)

        logger.info("检查组件 %s 的 %d 个源码包...", index.component, len(index))
        targets: list[tuple[str, str]] = []
        for name in index.packages():
            logger.debug("检查源码包 %s...", name)
            entry = index.get(name)
            if entry is None:
                message = f"组件 {component} 声明的源码包 {name} 缺失。"
                logger.error(message)
                self._findings.add_issue(component, Architecture.SOURCE, IssueKind.INTEGRITY_MISMATCH, message)
                continue

            if self._check_files:
                targets.extend((url, f"源码包 {entry.name}") for url in entry.links.values())

        await self._probe_all(component, targets)
        return index

    async def _check_binary_component(
        self, component: str, architecture: Architecture, source_index: SourceIndex | None
    ) -> None:
        index: PackageIndex = await _call(self._provider.build_package_index, self._release, component, architecture)

        logger.info("检查组件 %s 架构 %s 的 %d 个二进制包...", index.component, index.architecture.value, len(index))
        targets: list[tuple[str, str]] = []
        for name in index.packages():
            logger.debug("检查二进制包 %s...", name)
            package = index.get(name)
            if package is None:
                message = f"组件 {component} 架构 {architecture.value} 声明的包 {name} 缺失。"
                logger.error(message)
                self._findings.add_issue(component, architecture, IssueKind.INTEGRITY_MISMATCH, message)
                continue

            if self._check_files and package.link:
                targets.append((package.link, f"包 {package.name}"))

            for dependency in package.dependencies:
                if index.get(dependency.name, dependency) is None:
                    if self._findings.add_missing_dependency(component, package.name, dependency):
                        logger.warning("组件 %s：包 %s 的依赖 %s 缺失。", component, package.name, dependency)

            self._check_source(component, package, source_index)

        await self._probe_all(component, targets)

    def _check_source(self, component: str, package: PackageEntry, source_index: SourceIndex | None) -> None:
        if package.source is None:
            logger.warning("组件 %s 的包 %s 未声明源码包。", component, package.name)
            return
        if source_index is None:
            logger.warning("未找到组件 %s 的源码索引，跳过包 %s 的源码检查。", component, package.name)
            return

        constraint = VersionConstraint(
            name=package.source,
            architecture=package.architecture,
            relation=VersionRelation.EXACT,
            version=package.source_version or package.version,
        )
        if source_index.get(package.source, constraint) is None:
            if self._findings.add_missing_source(component, package.name, package.source):
                logger.warning("组件 %s：包 %s 的源码包 %s 缺失。", component, package.name, package.source)
