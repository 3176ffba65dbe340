from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class AptCheckError(Exception):
    """
    apt-check 所有错误的基类。
    """


class HardInputError(AptCheckError):
    """
    无法开始检查的致命错误（调用方输入非法或无法获取 Release）。
    """


class InvalidArchitectureError(HardInputError):
    """
    无法识别的架构名称。
    """


class ReleaseFetchError(HardInputError):
    """
    无法获取或解析 Release/InRelease。
    """


class SignatureError(HardInputError):
    """
    签名密钥无法获取，或 InRelease 签名校验失败。
    """


class FetchError(AptCheckError):
    """
    索引文件下载失败或校验失败。
    """


class IndexParseError(FetchError):
    """
    索引内容无法解析。
    """


class ComplianceError(AptCheckError):
    """
    Release 不符合 Debian 仓库规范。
    """


class ProbeError(AptCheckError):
    """
    制品 URL 不可达。
    """


class Architecture(str, Enum):
    """
    Debian 架构标签；SOURCE 为源码相关问题保留的哨兵值。
    """

    AMD64 = "amd64"
    ARM64 = "arm64"
    ARMEL = "armel"
    ARMHF = "armhf"
    I386 = "i386"
    LOONG64 = "loong64"
    MIPS64EL = "mips64el"
    MIPSEL = "mipsel"
    PPC64EL = "ppc64el"
    RISCV64 = "riscv64"
    S390X = "s390x"
    ALL = "all"
    SOURCE = "source"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> Architecture:
        """
        解析架构名称（忽略大小写），未知名称抛出 InvalidArchitectureError。
        """
        try:
            return cls(text.strip().lower())
        except ValueError:
            raise InvalidArchitectureError(f"unknown architecture {text!r}") from None


class VersionRelation(str, Enum):
    """
    依赖关系中的版本运算符；ANY 表示不限制版本。
    """

    ANY = "any"
    EXACT = "="
    LESS_THAN = "<<"
    LESS_OR_EQUAL = "<="
    GREATER_THAN = ">>"
    GREATER_OR_EQUAL = ">="

    @classmethod
    def from_operator(cls, op: str) -> VersionRelation:
        """
        将 Debian 运算符转换为枚举；废弃的 < 与 > 分别等价于 <= 与 >=。
        """
        legacy = {"<": cls.LESS_OR_EQUAL, ">": cls.GREATER_OR_EQUAL}
        if op in legacy:
            return legacy[op]
        return cls(op)


@dataclass(frozen=True, slots=True)
class VersionConstraint:
    """
    依赖约束：包名 + 可选架构 + 版本关系；alternatives 为 "a | b" 形式的候选。
    """

    name: str
    architecture: Architecture | None = None
    relation: VersionRelation = VersionRelation.ANY
    version: str | None = None
    alternatives: tuple[VersionConstraint, ...] = ()

    def __post_init__(self) -> None:
        if self.relation is not VersionRelation.ANY and not self.version:
            raise ValueError(f"constraint on {self.name!r} with relation {self.relation.value} needs a version")

    def options(self) -> tuple[VersionConstraint, ...]:
        """
        返回主约束与所有候选约束（按声明顺序）。
        """
        return (self, *self.alternatives)

    def __str__(self) -> str:
        parts: list[str] = []
        for option in self.options():
            text = option.name
            if option.architecture is not None:
                text += f":{option.architecture.value}"
            if option.relation is not VersionRelation.ANY:
                text += f" ({option.relation.value} {option.version})"
            parts.append(text)
        return " | ".join(parts)


@dataclass(frozen=True, slots=True)
class PackageEntry:
    """
    Packages 索引中的一个二进制包。
    """

    name: str
    version: str
    architecture: Architecture
    dependencies: tuple[VersionConstraint, ...] = ()
    source: str | None = None
    source_version: str | None = None
    link: str = ""


@dataclass(frozen=True, slots=True)
class SourceEntry:
    """
    Sources 索引中的一个源码包；links 为制品类别到 URL 的映射。
    """

    name: str
    version: str
    links: dict[str, str] = field(default_factory=dict)


class IssueKind(str, Enum):
    """
    硬性问题的类别。
    """

    FETCH_FAILURE = "fetch_failure"
    INTEGRITY_MISMATCH = "integrity_mismatch"
    PROBE_FAILURE = "probe_failure"
