from __future__ import annotations

import json
from typing import Any, TextIO

from rich.console import Console
from rich.table import Table

from apt_check.report import Report


def report_to_json_obj(report: Report) -> dict[str, Any]:
    """
    将报告转换为可 JSON 序列化的字典结构。
    """
    return {
        "url": report.url,
        "dist": report.dist,
        "components": list(report.components),
        "architectures": [a.value for a in report.architectures],
        "check_files": report.check_files,
        "success": report.success,
        "issues": [
            {
                "component": i.component,
                "architecture": i.architecture.value,
                "kind": i.kind.value,
                "message": i.message,
            }
            for i in report.issues
        ],
        "missing_dependencies": [
            {
                "component": m.component,
                "package": m.package,
                "dependency": str(m.dependency),
                "name": m.dependency.name,
                "relation": m.dependency.relation.value,
                "version": m.dependency.version,
            }
            for m in report.missing_dependencies
        ],
        "missing_sources": [
            {"component": m.component, "package": m.package, "source": m.source} for m in report.missing_sources
        ],
    }


def render_json(report: Report) -> str:
    """
    渲染 JSON 输出。
    """
    return json.dumps(report_to_json_obj(report), ensure_ascii=False, indent=2)


def _md_cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")


def render_markdown(report: Report) -> str:
    """
    渲染 Markdown 报告（统计 + 三张表格）。
    """
    lines: list[str] = []
    lines.append(
        f"# apt-check 报告\n\n- 仓库：`{report.url}`\n- 发行版：`{report.dist}`\n"
        f"- 组件：{', '.join(report.components) or '-'}\n"
        f"- 架构：{', '.join(a.value for a in report.architectures) or '-'}\n"
        f"- 结果：{'通过' if report.success else '存在问题'}\n"
    )

    lines.append(f"## 问题（{len(report.issues)}）\n")
    lines.append("| 组件 | 架构 | 类别 | 描述 |")
    lines.append("|---|---|---|---|")
    for i in report.issues:
        lines.append(f"| {i.component} | {i.architecture.value} | {i.kind.value} | {_md_cell(i.message)} |")

    lines.append(f"\n## 缺失依赖（{len(report.missing_dependencies)}）\n")
    lines.append("| 组件 | 包 | 依赖 |")
    lines.append("|---|---|---|")
    for m in report.missing_dependencies:
        lines.append(f"| {m.component} | {m.package} | {_md_cell(str(m.dependency))} |")

    lines.append(f"\n## 缺失源码包（{len(report.missing_sources)}）\n")
    lines.append("| 组件 | 包 | 源码包 |")
    lines.append("|---|---|---|")
    for m in report.missing_sources:
        lines.append(f"| {m.component} | {m.package} | {m.source} |")
    return "\n".join(lines) + "\n"


def print_table(report: Report, *, file: TextIO | None = None) -> None:
    """
    以控制台表格形式输出报告。
    """
    console = Console(file=file)

    issues = Table(title=f"问题（{len(report.issues)}）")
    issues.add_column("组件", no_wrap=True)
    issues.add_column("架构", no_wrap=True)
    issues.add_column("类别", no_wrap=True)
    issues.add_column("描述")
    for i in report.issues:
        issues.add_row(i.component, i.architecture.value, i.kind.value, i.message)

    deps = Table(title=f"缺失依赖（{len(report.missing_dependencies)}）")
    deps.add_column("组件", no_wrap=True)
    deps.add_column("包", no_wrap=True)
    deps.add_column("依赖")
    for m in report.missing_dependencies:
        deps.add_row(m.component, m.package, str(m.dependency))

    sources = Table(title=f"缺失源码包（{len(report.missing_sources)}）")
    sources.add_column("组件", no_wrap=True)
    sources.add_column("包", no_wrap=True)
    sources.add_column("源码包", no_wrap=True)
    for m in report.missing_sources:
        sources.add_row(m.component, m.package, m.source)

    for table in (issues, deps, sources):
        if table.row_count:
            console.print(table)
    console.print(
        f"{report.url} {report.dist}：问题 {len(report.issues)}，"
        f"缺失依赖 {len(report.missing_dependencies)}，缺失源码包 {len(report.missing_sources)}"
    )
