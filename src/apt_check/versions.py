from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TypeVar

from debian.debian_support import Version, version_compare

from apt_check.models import Architecture, PackageEntry, SourceEntry, VersionConstraint, VersionRelation

EntryT = TypeVar("EntryT", PackageEntry, SourceEntry)


def compare_versions(a: str, b: str) -> int:
    """
    按 Debian 规则比较两个版本（epoch、upstream、revision；~ 排在空串之前）。
    """
    return version_compare(a, b)


def version_satisfies(candidate: str, relation: VersionRelation, required: str | None) -> bool:
    """
    判断候选版本是否满足 (relation, required)。
    """
    if relation is VersionRelation.ANY or required is None:
        return True

    cmp = compare_versions(candidate, required)
    if relation is VersionRelation.EXACT:
        return cmp == 0
    if relation is VersionRelation.LESS_THAN:
        return cmp < 0
    if relation is VersionRelation.LESS_OR_EQUAL:
        return cmp <= 0
    if relation is VersionRelation.GREATER_THAN:
        return cmp > 0
    if relation is VersionRelation.GREATER_OR_EQUAL:
        return cmp >= 0
    raise ValueError(f"unknown relation {relation!r}")


def _architecture_of(entry: PackageEntry | SourceEntry) -> Architecture | None:
    return getattr(entry, "architecture", None)


def _matches(entry: PackageEntry | SourceEntry, constraint: VersionConstraint) -> bool:
    """
    判断单个条目是否满足单个约束（不含 alternatives）。
    """
    if constraint.architecture is not None:
        arch = _architecture_of(entry)
        # Architecture: all 的包可满足任意架构限定
        if arch is not None and arch is not constraint.architecture and arch is not Architecture.ALL:
            return False
    return version_satisfies(entry.version, constraint.relation, constraint.version)


def select_candidate(candidates: Iterable[EntryT]) -> EntryT | None:
    """
    同名多版本时的取舍策略：Debian 版本最高者胜出，版本相同按架构名排序取第一个。
    """
    best: EntryT | None = None
    for entry in candidates:
        if best is None:
            best = entry
            continue
        cmp = compare_versions(entry.version, best.version)
        if cmp > 0:
            best = entry
        elif cmp == 0 and str(_architecture_of(entry) or "") < str(_architecture_of(best) or ""):
            best = entry
    return best


def resolve(
    entries_by_name: Mapping[str, tuple[EntryT, ...]],
    name: str,
    constraint: VersionConstraint | None,
) -> EntryT | None:
    """
    在索引数据中解析 name + 可选约束，返回满足条件的条目或 None。

    constraint 含 alternatives 时，按声明顺序依次尝试，第一个可解析的候选胜出。
    主约束使用调用方给出的 name，候选约束使用各自的 name。
    """
    if constraint is None:
        return select_candidate(entries_by_name.get(name, ()))

    for index, option in enumerate(constraint.options()):
        lookup_name = name if index == 0 else option.name
        candidates = [e for e in entries_by_name.get(lookup_name, ()) if _matches(e, option)]
        found = select_candidate(candidates)
        if found is not None:
            return found
    return None


def is_valid_version(text: str) -> bool:
    """
    判断字符串是否为合法的 Debian 版本号。
    """
    if not text or any(c.isspace() for c in text):
        return False
    try:
        Version(text)
    except ValueError:
        return False
    return True
