from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from apt_check.checker import ConsistencyChecker
from apt_check.index import PackageIndex, SourceIndex, parse_packages, parse_sources
from apt_check.models import (
    Architecture,
    ComplianceError,
    FetchError,
    InvalidArchitectureError,
    IssueKind,
    PackageEntry,
    ProbeError,
    SourceEntry,
    VersionConstraint,
    VersionRelation,
)
from apt_check.report import Issue, MissingDependency, MissingSource

AMD64 = Architecture.AMD64
ARM64 = Architecture.ARM64


@dataclass
class FakeRelease:
    """
    最小 Release 描述，可选择是否通过规范检查。
    """

    components: tuple[str, ...] = ("main",)
    architectures: tuple[Architecture, ...] = (AMD64,)
    compliant: bool = True

    def check_compliance(self) -> None:
        if not self.compliant:
            raise ComplianceError("expired")


@dataclass
class FakeProvider:
    """
    内存中的索引提供者；值为异常时模拟获取失败，记录调用顺序。
    """

    sources: dict[str, SourceIndex | Exception] = field(default_factory=dict)
    packages: dict[tuple[str, Architecture], PackageIndex | Exception] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)

    async def build_source_index(self, release: FakeRelease, component: str) -> SourceIndex:
        self.calls.append(("source", component))
        await asyncio.sleep(0)
        value = self.sources.get(component, FetchError(f"no Sources for {component}"))
        if isinstance(value, Exception):
            raise value
        return value

    async def build_package_index(
        self, release: FakeRelease, component: str, architecture: Architecture
    ) -> PackageIndex:
        self.calls.append(("packages", f"{component}/{architecture.value}"))
        await asyncio.sleep(0)
        value = self.packages.get((component, architecture), FetchError(f"no Packages for {component}"))
        if isinstance(value, Exception):
            raise value
        return value


@dataclass
class FakeProber:
    broken: set[str] = field(default_factory=set)
    calls: list[str] = field(default_factory=list)

    async def probe(self, url: str) -> None:
        self.calls.append(url)
        if url in self.broken:
            raise ProbeError(f"{url}: http 404")


def _pkg(
    name: str,
    version: str,
    *,
    deps: tuple[VersionConstraint, ...] = (),
    source: str | None = None,
    arch: Architecture = AMD64,
    link: str = "",
) -> PackageEntry:
    return PackageEntry(name=name, version=version, architecture=arch, dependencies=deps, source=source, link=link)


def _packages(component: str, arch: Architecture, *entries: PackageEntry, extra: tuple[str, ...] = ()) -> PackageIndex:
    return PackageIndex(component, arch, [e.name for e in entries] + list(extra), entries)


def _sources(component: str, *entries: SourceEntry, extra: tuple[str, ...] = ()) -> SourceIndex:
    return SourceIndex(component, [e.name for e in entries] + list(extra), entries)


def _ge(name: str, version: str) -> VersionConstraint:
    return VersionConstraint(name=name, relation=VersionRelation.GREATER_OR_EQUAL, version=version)


def _consistent_provider() -> FakeProvider:
    return FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="a-src", version="2.0"), SourceEntry(name="b", version="2.1"))},
        packages={
            ("main", AMD64): _packages(
                "main",
                AMD64,
                _pkg("A", "2.0", deps=(_ge("B", "2.0"),), source="a-src"),
                _pkg("B", "2.1", source="b"),
            )
        },
    )


@pytest.mark.asyncio
async def test_consistent_repository_succeeds() -> None:
    """
    依赖与源码包都能解析时，三类发现均为空且 success 为 True。
    """
    checker = ConsistencyChecker(FakeRelease(), _consistent_provider())
    success, report = await checker.run()
    assert success is True
    assert report.success is True
    assert report.issues == ()
    assert report.missing_dependencies == ()
    assert report.missing_sources == ()


@pytest.mark.asyncio
async def test_unsatisfied_version_constraint_is_missing_dependency() -> None:
    """
    A 依赖 B (>= 2.0)，索引中只有 B 1.0 时，应记录 MissingDependency 且整体失败。
    """
    provider = FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="A", version="1.0"), SourceEntry(name="B", version="1.0"))},
        packages={
            ("main", AMD64): _packages(
                "main", AMD64, _pkg("A", "1.0", deps=(_ge("B", "2.0"),), source="A"), _pkg("B", "1.0", source="B")
            )
        },
    )
    success, report = await ConsistencyChecker(FakeRelease(), provider).run()
    assert success is False
    assert report.missing_dependencies == (MissingDependency("main", "A", _ge("B", "2.0")),)
    assert report.issues == ()
    assert report.missing_sources == ()


@pytest.mark.asyncio
async def test_source_with_different_version_is_missing_source() -> None:
    """
    A 声明源码包 a-src，源码索引中 a-src 版本不同，应记录 MissingSource。
    """
    provider = FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="a-src", version="0.9"))},
        packages={("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", source="a-src"))},
    )
    success, report = await ConsistencyChecker(FakeRelease(), provider).run()
    assert success is False
    assert report.missing_sources == (MissingSource("main", "A", "a-src"),)


@pytest.mark.asyncio
async def test_explicit_source_version_is_used_for_lookup() -> None:
    """
    Source 字段带显式版本（binNMU）时，应按该版本查找源码包。
    """
    entry = PackageEntry(
        name="A", version="1.0-1+b1", architecture=AMD64, source="a-src", source_version="1.0-1"
    )
    provider = FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="a-src", version="1.0-1"))},
        packages={("main", AMD64): _packages("main", AMD64, entry)},
    )
    success, report = await ConsistencyChecker(FakeRelease(), provider).run()
    assert success is True
    assert report.missing_sources == ()


@pytest.mark.asyncio
async def test_failed_package_index_is_contained_to_its_unit() -> None:
    """
    (main, arm64) 的 Packages 获取失败只记录一个 Issue，其他 (组件, 架构) 照常检查。
    """
    provider = FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="A", version="1.0"))},
        packages={
            ("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", deps=(_ge("B", "2.0"),), source="A")),
            ("main", ARM64): FetchError("connection reset"),
        },
    )
    release = FakeRelease(architectures=(AMD64, ARM64))
    success, report = await ConsistencyChecker(release, provider).run()

    assert success is False
    assert len(report.issues) == 1
    issue = report.issues[0]
    assert (issue.component, issue.architecture, issue.kind) == ("main", ARM64, IssueKind.FETCH_FAILURE)
    assert "connection reset" in issue.message
    assert report.missing_dependencies == (MissingDependency("main", "A", _ge("B", "2.0")),)


@pytest.mark.asyncio
async def test_check_files_disabled_never_probes() -> None:
    """
    check_files 关闭时不调用 prober，即使链接实际已失效也不会出现探测问题。
    """
    provider = FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="A", version="1.0", links={"dsc": "http://x/a.dsc"}))},
        packages={("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", source="A", link="http://x/a.deb"))},
    )
    prober = FakeProber(broken={"http://x/a.dsc", "http://x/a.deb"})
    success, report = await ConsistencyChecker(FakeRelease(), provider, prober, check_files=False).run()
    assert prober.calls == []
    assert success is True
    assert not any(i.kind is IssueKind.PROBE_FAILURE for i in report.issues)


@pytest.mark.asyncio
async def test_broken_links_are_source_tagged_issues() -> None:
    """
    check_files 开启时，失效的二进制与源码制品都记录为架构 SOURCE 的 PROBE_FAILURE。
    """
    provider = FakeProvider(
        sources={
            "main": _sources(
                "main",
                SourceEntry(name="A", version="1.0", links={"dsc": "http://x/a.dsc", "orig": "http://x/a.orig.tar.gz"}),
            )
        },
        packages={("main", ARM64): _packages("main", ARM64, _pkg("A", "1.0", source="A", arch=ARM64, link="http://x/a.deb"))},
    )
    prober = FakeProber(broken={"http://x/a.dsc", "http://x/a.deb"})
    release = FakeRelease(architectures=(ARM64,))
    success, report = await ConsistencyChecker(release, provider, prober, check_files=True).run()

    assert success is False
    assert sorted(prober.calls) == ["http://x/a.deb", "http://x/a.dsc", "http://x/a.orig.tar.gz"]
    assert len(report.issues) == 2
    assert all(i.architecture is Architecture.SOURCE for i in report.issues)
    assert all(i.kind is IssueKind.PROBE_FAILURE for i in report.issues)


@pytest.mark.asyncio
async def test_missing_source_index_skips_source_checks() -> None:
    """
    组件的 Sources 无法构建时，只记录获取失败的 Issue，不产生任何 MissingSource。
    """
    provider = FakeProvider(
        sources={"main": FetchError("Sources.xz: http 404")},
        packages={("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", source="nowhere"))},
    )
    success, report = await ConsistencyChecker(FakeRelease(), provider).run()

    assert success is False
    assert report.missing_sources == ()
    assert [(i.component, i.architecture, i.kind) for i in report.issues] == [
        ("main", Architecture.SOURCE, IssueKind.FETCH_FAILURE)
    ]


@pytest.mark.asyncio
async def test_package_without_source_is_skipped() -> None:
    """
    未声明源码包的二进制包只记录警告，不产生 MissingSource。
    """
    provider = FakeProvider(
        sources={"main": _sources("main")},
        packages={("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", source=None))},
    )
    success, report = await ConsistencyChecker(FakeRelease(), provider).run()
    assert success is True
    assert report.missing_sources == ()


@pytest.mark.asyncio
async def test_declared_but_unresolvable_names_are_integrity_issues() -> None:
    """
    索引声明却无法解析的包名记录为 INTEGRITY_MISMATCH，并跳过后续检查。
    """
    provider = FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="A", version="1.0"), extra=("ghost-src",))},
        packages={("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", source="A"), extra=("ghost",))},
    )
    success, report = await ConsistencyChecker(FakeRelease(), provider).run()

    assert success is False
    kinds = {(i.architecture, i.kind) for i in report.issues}
    assert kinds == {
        (Architecture.SOURCE, IssueKind.INTEGRITY_MISMATCH),
        (AMD64, IssueKind.INTEGRITY_MISMATCH),
    }
    assert report.missing_dependencies == ()
    assert report.missing_sources == ()


@pytest.mark.asyncio
async def test_same_missing_dependency_on_two_architectures_is_recorded_once() -> None:
    """
    同一组件内同一包的同一缺失依赖在多个架构上出现时只记录一次。
    """
    dep = _ge("B", "2.0")
    provider = FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="A", version="1.0"))},
        packages={
            ("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", deps=(dep,), source="A")),
            ("main", ARM64): _packages("main", ARM64, _pkg("A", "1.0", deps=(dep,), source="A", arch=ARM64)),
        },
    )
    release = FakeRelease(architectures=(AMD64, ARM64))
    _, report = await ConsistencyChecker(release, provider).run()
    assert report.missing_dependencies == (MissingDependency("main", "A", dep),)


@pytest.mark.asyncio
async def test_runs_are_idempotent() -> None:
    """
    对同一仓库快照运行两次，三类发现集合应完全一致。
    """

    def build() -> FakeProvider:
        return FakeProvider(
            sources={"main": _sources("main", SourceEntry(name="x-src", version="9")), "contrib": FetchError("gone")},
            packages={
                ("main", AMD64): _packages(
                    "main",
                    AMD64,
                    _pkg("A", "1.0", deps=(_ge("B", "2.0"), VersionConstraint(name="C")), source="x-src"),
                    _pkg("B", "1.0", source="x-src"),
                ),
                ("contrib", AMD64): _packages("contrib", AMD64, _pkg("D", "1.0", source="d", deps=(_ge("E", "1"),))),
            },
        )

    release = FakeRelease(components=("main", "contrib"))
    _, first = await ConsistencyChecker(release, build()).run()
    _, second = await ConsistencyChecker(release, build()).run()

    assert set(first.issues) == set(second.issues)
    assert set(first.missing_dependencies) == set(second.missing_dependencies)
    assert set(first.missing_sources) == set(second.missing_sources)
    assert len(first.missing_dependencies) == 3


@pytest.mark.asyncio
async def test_source_phase_completes_before_binary_phase() -> None:
    """
    所有组件的源码检查都应在任何二进制检查开始之前完成。
    """
    provider = FakeProvider(
        sources={c: _sources(c) for c in ("main", "contrib", "non-free")},
        packages={(c, a): _packages(c, a) for c in ("main", "contrib", "non-free") for a in (AMD64, ARM64)},
    )
    release = FakeRelease(components=("main", "contrib", "non-free"), architectures=(AMD64, ARM64))
    await ConsistencyChecker(release, provider, max_concurrency=2).run()

    kinds = [kind for kind, _ in provider.calls]
    assert kinds == ["source"] * 3 + ["packages"] * 6


@pytest.mark.asyncio
async def test_empty_selection_uses_release_and_skips_source_architecture() -> None:
    """
    未指定组件/架构时使用 Release 中的全部值；SOURCE 架构不做二进制检查。
    """
    provider = FakeProvider(
        sources={"main": _sources("main"), "contrib": _sources("contrib")},
        packages={(c, AMD64): _packages(c, AMD64) for c in ("main", "contrib")},
    )
    release = FakeRelease(components=("main", "contrib"), architectures=(AMD64, Architecture.SOURCE))
    checker = ConsistencyChecker(release, provider)
    assert checker.components == ("main", "contrib")
    assert checker.binary_architectures == (AMD64,)
    success, _ = await checker.run()
    assert success is True
    assert sorted(target for kind, target in provider.calls if kind == "packages") == ["contrib/amd64", "main/amd64"]


@pytest.mark.asyncio
async def test_explicit_selection_overrides_release() -> None:
    """
    显式指定的组件与架构（字符串）应覆盖 Release 中的列表。
    """
    provider = FakeProvider(
        sources={"contrib": _sources("contrib")},
        packages={("contrib", ARM64): _packages("contrib", ARM64)},
    )
    release = FakeRelease(components=("main", "contrib"), architectures=(AMD64, ARM64))
    checker = ConsistencyChecker(release, provider, components=["contrib"], architectures=["ARM64"])
    assert checker.architectures == (ARM64,)
    success, report = await checker.run()
    assert success is True
    assert report.components == ("contrib",)
    assert provider.calls == [("source", "contrib"), ("packages", "contrib/arm64")]


def test_unparseable_architecture_is_hard_error() -> None:
    """
    调用方给出无法识别的架构名时，在检查开始前抛出错误。
    """
    with pytest.raises(InvalidArchitectureError):
        ConsistencyChecker(FakeRelease(), FakeProvider(), architectures=["amd65"])


def test_check_files_requires_prober() -> None:
    with pytest.raises(ValueError):
        ConsistencyChecker(FakeRelease(), FakeProvider(), check_files=True)


@pytest.mark.asyncio
async def test_non_compliant_release_does_not_abort() -> None:
    """
    Release 不符合规范只记录警告，检查照常进行。
    """
    success, report = await ConsistencyChecker(FakeRelease(compliant=False), _consistent_provider()).run()
    assert success is True
    assert report.issues == ()


@pytest.mark.asyncio
async def test_synchronous_collaborators_are_supported() -> None:
    """
    同步实现的 provider 与 prober 也能被调度。
    """
    sources = _sources("main", SourceEntry(name="A", version="1.0", links={"dsc": "http://x/a.dsc"}))
    packages = _packages("main", AMD64, _pkg("A", "1.0", source="A", link="http://x/a.deb"))
    probed: list[str] = []

    class SyncProvider:
        def build_source_index(self, release: FakeRelease, component: str) -> SourceIndex:
            return sources

        def build_package_index(self, release: FakeRelease, component: str, architecture: Architecture) -> PackageIndex:
            return packages

    class SyncProber:
        def probe(self, url: str) -> None:
            probed.append(url)

    success, _ = await ConsistencyChecker(FakeRelease(), SyncProvider(), SyncProber(), check_files=True).run()
    assert success is True
    assert sorted(probed) == ["http://x/a.deb", "http://x/a.dsc"]


@pytest.mark.asyncio
async def test_cancellation_propagates_without_findings() -> None:
    """
    取消整次检查时，CancelledError 向上传播，不会被记录为 Issue。
    """
    started = asyncio.Event()

    class HangingProvider(FakeProvider):
        async def build_source_index(self, release: FakeRelease, component: str) -> SourceIndex:
            started.set()
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

    checker = ConsistencyChecker(FakeRelease(), HangingProvider())
    task = asyncio.create_task(checker.run())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert checker.report is None


@pytest.mark.asyncio
async def test_checker_runs_only_once_and_reports_progress() -> None:
    """
    每个实例只能运行一次；每个检查单元完成时都会回调进度。
    """
    done: list[int] = []
    checker = ConsistencyChecker(FakeRelease(), _consistent_provider(), on_unit_complete=lambda: done.append(1))
    await checker.run()
    assert len(done) == checker.total_units == 2
    with pytest.raises(RuntimeError):
        await checker.run()


@pytest.mark.asyncio
async def test_findings_reference_only_selected_components() -> None:
    """
    所有发现都只引用所选组件；失败的组件也在所选范围内。
    """
    provider = FakeProvider(
        sources={"main": _sources("main")},
        packages={("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", deps=(VersionConstraint(name="Z"),), source="A"))},
    )
    release = FakeRelease(components=("main", "contrib"))
    _, report = await ConsistencyChecker(release, provider).run()
    findings: list[Issue | MissingDependency | MissingSource] = [
        *report.issues,
        *report.missing_dependencies,
        *report.missing_sources,
    ]
    assert findings
    assert {f.component for f in findings} <= {"main", "contrib"}


@pytest.mark.asyncio
async def test_parsed_package_without_source_field_records_no_missing_source() -> None:
    """
    Packages 中未声明 Source 字段的二进制包不做源码检查，即使源码索引中没有同名源码包。
    """
    packages = parse_packages(
        "Package: foo-bin\nVersion: 1.0\nArchitecture: amd64\n",
        component="main",
        architecture=AMD64,
        base_url="http://x",
    )
    sources = parse_sources("Package: foo\nVersion: 1.0\n", component="main", base_url="http://x")
    provider = FakeProvider(sources={"main": sources}, packages={("main", AMD64): packages})

    success, report = await ConsistencyChecker(FakeRelease(), provider).run()
    assert report.missing_sources == ()
    assert success is True


@pytest.mark.asyncio
async def test_run_logs_index_sizes_and_summary_counts(caplog: pytest.LogCaptureFixture) -> None:
    """
    日志应包含每个索引的组件/架构与条目数，以及最终的三类发现计数。
    """
    provider = FakeProvider(
        sources={"main": _sources("main", SourceEntry(name="a-src", version="0.9"))},
        packages={("main", AMD64): _packages("main", AMD64, _pkg("A", "1.0", source="a-src"))},
    )
    with caplog.at_level("INFO", logger="apt_check"):
        await ConsistencyChecker(FakeRelease(), provider).run()

    messages = [r.getMessage() for r in caplog.records]
    assert "检查组件 main 的 1 个源码包..." in messages
    assert "检查组件 main 架构 amd64 的 1 个二进制包..." in messages
    assert "发现 0 个问题。" in messages
    assert "发现 1 个缺失的源码包。" in messages
