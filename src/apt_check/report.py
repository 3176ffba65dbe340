from __future__ import annotations

import threading
from dataclasses import dataclass

from apt_check.models import Architecture, IssueKind, VersionConstraint


@dataclass(frozen=True, slots=True)
class Issue:
    """
    硬性问题：索引获取失败、声明的包缺失或制品链接失效。
    """

    component: str
    architecture: Architecture
    kind: IssueKind
    message: str


@dataclass(frozen=True, slots=True)
class MissingDependency:
    """
    同一索引内无法满足的依赖。
    """

    component: str
    package: str
    dependency: VersionConstraint


@dataclass(frozen=True, slots=True)
class MissingSource:
    """
    组件源码索引中找不到匹配版本的源码包。
    """

    component: str
    package: str
    source: str


@dataclass(frozen=True, slots=True)
class Report:
    """
    一次检查的完整报告（只读）。
    """

    url: str
    dist: str
    components: tuple[str, ...]
    architectures: tuple[Architecture, ...]
    check_files: bool
    issues: tuple[Issue, ...]
    missing_dependencies: tuple[MissingDependency, ...]
    missing_sources: tuple[MissingSource, ...]

    @property
    def success(self) -> bool:
        return not (self.issues or self.missing_dependencies or self.missing_sources)


class ReportAggregator:
    """
    检查过程中唯一的共享可变状态：线程安全地追加发现，最后冻结为 Report。

    发现只增不删；相同的 MissingDependency/MissingSource 只记录一次。
    """

    def __init__(self, components: tuple[str, ...], architectures: tuple[Architecture, ...]) -> None:
        self._components = components
        self._architectures = architectures
        self._lock = threading.Lock()
        self._issues: list[Issue] = []
        self._missing_dependencies: dict[MissingDependency, None] = {}
        self._missing_sources: dict[MissingSource, None] = {}
        self._frozen = False

    def _check_selection(self, component: str, architecture: Architecture | None = None) -> None:
        if component not in self._components:
            raise ValueError(f"component {component!r} is not part of the selection")
        if architecture is not None and architecture is not Architecture.SOURCE and architecture not in self._architectures:
            raise ValueError(f"architecture {architecture.value!r} is not part of the selection")

    def _ensure_open(self) -> None:
        if self._frozen:
            raise RuntimeError("report is frozen")

    def add_issue(self, component: str, architecture: Architecture, kind: IssueKind, message: str) -> None:
        self._check_selection(component, architecture)
        with self._lock:
            self._ensure_open()
            self._issues.append(Issue(component=component, architecture=architecture, kind=kind, message=message))

    def add_missing_dependency(self, component: str, package: str, dependency: VersionConstraint) -> bool:
        """
        记录缺失依赖；重复记录时返回 False。
        """
        self._check_selection(component)
        finding = MissingDependency(component=component, package=package, dependency=dependency)
        with self._lock:
            self._ensure_open()
            if finding in self._missing_dependencies:
                return False
            self._missing_dependencies[finding] = None
            return True

    def add_missing_source(self, component: str, package: str, source: str) -> bool:
        """
        记录缺失源码包；重复记录时返回 False。
        """
        self._check_selection(component)
        finding = MissingSource(component=component, package=package, source=source)
        with self._lock:
            self._ensure_open()
            if finding in self._missing_sources:
                return False
            self._missing_sources[finding] = None
            return True

    def counts(self) -> tuple[int, int, int]:
        with self._lock:
            return len(self._issues), len(self._missing_dependencies), len(self._missing_sources)

    def freeze(self, *, url: str, dist: str, check_files: bool) -> Report:
        """
        冻结聚合器并生成排序后的只读 Report；之后不再接受新的发现。
        """
        with self._lock:
            self._frozen = True
            issues = sorted(self._issues, key=lambda i: (i.component, i.architecture.value, i.kind.value, i.message))
            deps = sorted(self._missing_dependencies, key=lambda m: (m.component, m.package, str(m.dependency)))
            sources = sorted(self._missing_sources, key=lambda m: (m.component, m.package, m.source))

        return Report(
            url=url,
            dist=dist,
            components=self._components,
            architectures=self._architectures,
            check_files=check_files,
            issues=tuple(issues),
            missing_dependencies=tuple(deps),
            missing_sources=tuple(sources),
        )
