from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from debian import deb822

from apt_check.models import Architecture, ComplianceError, InvalidArchitectureError, ReleaseFetchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReleaseFile:
    """
    Release 中登记的一个索引文件（相对路径 + SHA256 + 大小）。
    """

    name: str
    sha256: str
    size: int


def flat_root(base_url: str, path: str) -> str:
    """
    平铺仓库的根目录 URL；path 为 "./" 或空时即仓库根。
    """
    base = base_url.rstrip("/")
    rel = path.strip("/")
    if rel in {"", "."}:
        return base
    return f"{base}/{rel}"


def flat_component(path: str) -> str:
    """
    平铺仓库没有组件，以路径作为伪组件名。
    """
    return path.strip("/") or "."


def _parse_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, slots=True)
class Release:
    """
    已解析的 Release/InRelease 描述。
    """

    base_url: str
    dist: str
    suite: str | None
    codename: str | None
    components: tuple[str, ...]
    architectures: tuple[Architecture, ...]
    date: str | None = None
    valid_until: str | None = None
    files: dict[str, ReleaseFile] = field(default_factory=dict)
    path: str | None = None

    @property
    def flat(self) -> bool:
        return self.path is not None

    def index_url(self) -> str:
        """
        返回索引文件所在目录的 URL：常规仓库为 dists/<dist>，平铺仓库为 <url>/<path>。
        """
        if self.path is None:
            return f"{self.base_url}/dists/{self.dist}"
        return flat_root(self.base_url, self.path)

    def file(self, name: str) -> ReleaseFile | None:
        return self.files.get(name)

    def check_compliance(self, *, now: datetime | None = None) -> None:
        """
        检查 Release 是否符合 Debian 仓库规范，不符合时抛出 ComplianceError（列出全部问题）。
        """
        problems: list[str] = []
        if not self.suite and not self.codename:
            problems.append("neither Suite nor Codename is set")
        if not self.date:
            problems.append("Date is missing")
        elif _parse_date(self.date) is None:
            problems.append(f"Date {self.date!r} cannot be parsed")
        if not self.components:
            problems.append("Components is missing")
        if not self.architectures:
            problems.append("Architectures is missing")
        if not self.files:
            problems.append("no SHA256 file list")
        if self.valid_until:
            valid_until = _parse_date(self.valid_until)
            current = now or datetime.now(timezone.utc)
            if valid_until is None:
                problems.append(f"Valid-Until {self.valid_until!r} cannot be parsed")
            elif valid_until < current:
                problems.append(f"expired at {self.valid_until}")

        if problems:
            raise ComplianceError("; ".join(problems))


def _parse_architectures(raw: str) -> tuple[Architecture, ...]:
    result: list[Architecture] = []
    for tag in raw.split():
        try:
            result.append(Architecture.parse(tag))
        except InvalidArchitectureError:
            logger.warning("Release 中的架构 %s 无法识别，已忽略。", tag)
    return tuple(result)


def _parse_files(release: deb822.Release) -> dict[str, ReleaseFile]:
    files: dict[str, ReleaseFile] = {}
    for item in release.get("SHA256") or []:
        name = item.get("name")
        if not name:
            continue
        try:
            size = int(item.get("size") or 0)
        except ValueError:
            size = 0
        files[name] = ReleaseFile(name=name, sha256=str(item.get("sha256", "")).lower(), size=size)
    return files


def parse_release(text: str, *, base_url: str, dist: str, path: str | None = None) -> Release:
    """
    解析 Release 或 InRelease 文本（签名块会被剥离，签名由 signing 模块另行校验）。

    path 不为 None 时按平铺仓库处理：未声明 Components 时以路径作为唯一的伪组件。
    """
    try:
        data = deb822.Release(text.splitlines())
    except (ValueError, UnicodeError) as exc:
        raise ReleaseFetchError(f"cannot parse Release: {exc}") from exc

    if len(data) == 0:
        raise ReleaseFetchError("Release file is empty")

    components = tuple((data.get("Components") or "").split())
    if path is not None and not components:
        components = (flat_component(path),)

    return Release(
        base_url=base_url.rstrip("/"),
        dist=dist,
        suite=data.get("Suite") or None,
        codename=data.get("Codename") or None,
        components=components,
        architectures=_parse_architectures(data.get("Architectures") or ""),
        date=data.get("Date") or None,
        valid_until=data.get("Valid-Until") or None,
        files=_parse_files(data),
        path=path,
    )
