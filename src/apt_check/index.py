from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any, Generic, TypeVar

from debian import deb822

from apt_check.models import (
    Architecture,
    IndexParseError,
    InvalidArchitectureError,
    PackageEntry,
    SourceEntry,
    VersionConstraint,
    VersionRelation,
)
from apt_check.versions import is_valid_version, resolve

logger = logging.getLogger(__name__)

EntryT = TypeVar("EntryT", PackageEntry, SourceEntry)

_UNQUALIFIED_ARCHES = {None, "any", "native"}


class _Index(Generic[EntryT]):
    """
    单个组件（及架构）的只读索引。
    """

    def __init__(self, component: str, declared: Iterable[str], entries: Iterable[EntryT]) -> None:
        grouped: dict[str, list[EntryT]] = {}
        for entry in entries:
            grouped.setdefault(entry.name, []).append(entry)

        self._component = component
        self._declared = tuple(dict.fromkeys(declared))
        self._entries: Mapping[str, tuple[EntryT, ...]] = MappingProxyType(
            {name: tuple(items) for name, items in grouped.items()}
        )

    @property
    def component(self) -> str:
        return self._component

    def packages(self) -> tuple[str, ...]:
        """
        返回索引中声明的全部包名（去重，保留出现顺序）。
        """
        return self._declared

    def get(self, name: str, constraint: VersionConstraint | None = None) -> EntryT | None:
        """
        按名称与可选约束查找条目。
        """
        return resolve(self._entries, name, constraint)

    def __len__(self) -> int:
        return len(self._declared)


class PackageIndex(_Index[PackageEntry]):
    """
    一个 (组件, 架构) 的 Packages 索引。
    """

    def __init__(
        self,
        component: str,
        architecture: Architecture,
        declared: Iterable[str],
        entries: Iterable[PackageEntry],
    ) -> None:
        super().__init__(component, declared, entries)
        self._architecture = architecture

    @property
    def architecture(self) -> Architecture:
        return self._architecture


class SourceIndex(_Index[SourceEntry]):
    """
    一个组件的 Sources 索引；查找时忽略架构过滤。
    """


def _join_url(base: str, *parts: str) -> str:
    url = base.rstrip("/")
    for part in parts:
        part = part.strip("/")
        if part:
            url = f"{url}/{part}"
    return url


def _constraint_from_relation(rel: dict[str, Any]) -> VersionConstraint:
    """
    将 python-debian 解析出的单个关系字典转换为 VersionConstraint。
    """
    archqual = rel.get("archqual")
    architecture: Architecture | None = None
    if archqual not in _UNQUALIFIED_ARCHES:
        architecture = Architecture.parse(archqual)

    relation = VersionRelation.ANY
    version: str | None = None
    if rel.get("version"):
        op, version = rel["version"]
        relation = VersionRelation.from_operator(op)

    return VersionConstraint(name=rel["name"], architecture=architecture, relation=relation, version=version)


def parse_dependencies(raw: str) -> tuple[VersionConstraint, ...]:
    """
    解析 Depends 字段；"a | b" 形式合并为带 alternatives 的单个约束。
    """
    constraints: list[VersionConstraint] = []
    if not raw.strip():
        return ()
    for group in deb822.PkgRelation.parse_relations(raw):
        options = [_constraint_from_relation(rel) for rel in group if rel.get("name")]
        if not options:
            continue
        primary, *rest = options
        if rest:
            primary = VersionConstraint(
                name=primary.name,
                architecture=primary.architecture,
                relation=primary.relation,
                version=primary.version,
                alternatives=tuple(rest),
            )
        if primary not in constraints:
            constraints.append(primary)
    return tuple(constraints)


def _parse_source_field(raw: str | None) -> tuple[str | None, str | None]:
    """
    解析 "Source: name (version)" 字段，返回 (name, version)。
    """
    if not raw:
        return None, None
    raw = raw.strip()
    if "(" in raw and raw.endswith(")"):
        name, _, version = raw[:-1].partition("(")
        return name.strip() or None, version.strip() or None
    return raw, None


def _paragraphs(cls: type[deb822.Deb822], text: str) -> Iterable[deb822.Deb822]:
    try:
        yield from cls.iter_paragraphs(text.splitlines(), use_apt_pkg=False)
    except (ValueError, UnicodeError) as exc:
        raise IndexParseError(f"malformed index: {exc}") from exc


def parse_packages(
    text: str,
    *,
    component: str,
    architecture: Architecture,
    base_url: str,
    only_architecture: bool = False,
) -> PackageIndex:
    """
    解析 Packages 文本为 PackageIndex。

    版本号非法或架构未知的段落仍计入声明列表，但不生成可解析的条目。
    only_architecture=True 时（平铺仓库的多架构 Packages）只保留目标架构与 all 的段落。
    """
    declared: list[str] = []
    entries: list[PackageEntry] = []
    for para in _paragraphs(deb822.Packages, text):
        name = para.get("Package")
        if not name:
            continue
        if only_architecture and para.get("Architecture") not in {architecture.value, Architecture.ALL.value}:
            continue
        declared.append(name)

        version = para.get("Version", "")
        if not is_valid_version(version):
            logger.warning("包 %s 的版本号 %r 无法解析，已跳过。", name, version)
            continue

        try:
            arch = Architecture.parse(para.get("Architecture") or architecture.value)
            dependencies = parse_dependencies(para.get("Pre-Depends", "")) + parse_dependencies(
                para.get("Depends", "")
            )
        except (InvalidArchitectureError, ValueError) as exc:
            logger.warning("包 %s 的元数据无法解析：%s", name, exc)
            continue

        # 未声明 Source 时不做源码检查
        source, source_version = _parse_source_field(para.get("Source"))
        filename = para.get("Filename", "")
        entries.append(
            PackageEntry(
                name=name,
                version=version,
                architecture=arch,
                dependencies=dependencies,
                source=source,
                source_version=source_version,
                link=_join_url(base_url, filename) if filename else "",
            )
        )
    return PackageIndex(component, architecture, declared, entries)


def _artifact_kind(filename: str) -> str:
    """
    根据文件名推断源码制品类别。
    """
    if filename.endswith(".dsc"):
        return "dsc"
    if ".orig.tar." in filename or ".orig-" in filename:
        return "orig"
    if ".debian.tar." in filename or filename.endswith(".diff.gz"):
        return "debian"
    return filename


def _source_links(para: deb822.Deb822, base_url: str) -> dict[str, str]:
    directory = para.get("Directory", "")
    files = para.get("Checksums-Sha256") or para.get("Files") or []
    links: dict[str, str] = {}
    for item in files:
        filename = item.get("name")
        if not filename:
            continue
        kind = _artifact_kind(filename)
        if kind in links:
            kind = filename
        links[kind] = _join_url(base_url, directory, filename)
    return links


def parse_sources(text: str, *, component: str, base_url: str) -> SourceIndex:
    """
    解析 Sources 文本为 SourceIndex。
    """
    declared: list[str] = []
    entries: list[SourceEntry] = []
    for para in _paragraphs(deb822.Sources, text):
        name = para.get("Package")
        if not name:
            continue
        declared.append(name)

        version = para.get("Version", "")
        if not is_valid_version(version):
            logger.warning("源码包 %s 的版本号 %r 无法解析，已跳过。", name, version)
            continue

        entries.append(SourceEntry(name=name, version=version, links=_source_links(para, base_url)))
    return SourceIndex(component, declared, entries)
