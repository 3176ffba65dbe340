from __future__ import annotations

import argparse
import sys
from pathlib import Path

from apt_check.config import AppConfig, load_config
from apt_check.index_client import IndexAuth, IndexSettings
from apt_check.report import Report

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_FATAL = 2


def build_parser() -> argparse.ArgumentParser:
    """
    构建 apt-check 的命令行参数解析器。
    """
    parser = argparse.ArgumentParser(prog="apt-check", description="检查 APT 仓库的内部一致性")
    parser.add_argument("--version", action="store_true", help="输出版本号并退出")
    parser.add_argument("url", nargs="?", help="APT 仓库 URL（默认 Ubuntu 官方仓库）")
    parser.add_argument("-d", "--distro", help="发行版名称（默认 jammy）")
    parser.add_argument("-p", "--path", help="平铺仓库的路径（仓库根目录用 ./），指定后忽略 --distro")
    parser.add_argument("-k", "--key", help="InRelease 签名公钥的 URL；指定后校验签名")
    parser.add_argument("-r", "--rawkey", action="store_true", help="签名公钥是二进制格式（非 ASCII armor）")
    parser.add_argument("-c", "--component", action="append", default=[], help="要检查的组件（可重复）")
    parser.add_argument("-a", "--arch", action="append", default=[], help="要检查的架构（可重复）")
    parser.add_argument("--check-files", action="store_true", help="探测索引引用的制品文件是否可达")
    parser.add_argument("--config", help="配置文件路径（.toml 或 .yaml）")
    parser.add_argument("--format", choices=["table", "json", "md"], default="table", help="输出格式")
    parser.add_argument("--output", help="输出到文件（默认 stdout）")
    parser.add_argument("--max-concurrency", type=int, help="同时检查的索引数")
    parser.add_argument("--probe-concurrency", type=int, help="同时探测的制品数")
    parser.add_argument("--timeout", type=float, help="HTTP 超时秒数")
    parser.add_argument("--retries", type=int, help="网络错误重试次数")
    parser.add_argument("--bearer-token", help="私有仓库 Bearer Token（谨慎使用）")
    parser.add_argument("--basic-username", help="私有仓库 Basic 用户名（谨慎使用）")
    parser.add_argument("--basic-password", help="私有仓库 Basic 密码（谨慎使用）")
    parser.add_argument("--probe-cache", action="store_true", help="跨运行缓存探测成功的制品（默认关闭）")
    parser.add_argument("--refresh", action="store_true", help="忽略缓存并重新探测")
    parser.add_argument("--cache-ttl", type=int, help="缓存 TTL 秒数（0 表示永不过期）")
    parser.add_argument("--log-level", help="日志级别（DEBUG/INFO/WARNING/ERROR）")
    return parser


def _merge_cli_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    """
    将 CLI 参数覆盖合并到 AppConfig。
    """
    index = cfg.index

    auth: IndexAuth | None = index.auth
    if args.bearer_token or args.basic_username or args.basic_password:
        auth = IndexAuth(
            bearer_token=args.bearer_token,
            basic_username=args.basic_username,
            basic_password=args.basic_password,
        )

    index = IndexSettings(
        url=args.url or index.url,
        dist=args.distro or index.dist,
        timeout_s=index.timeout_s if args.timeout is None else float(args.timeout),
        retries=index.retries if args.retries is None else int(args.retries),
        auth=auth,
        path=args.path if args.path is not None else index.path,
        key_url=args.key or index.key_url,
        raw_key=index.raw_key or bool(args.rawkey),
    )

    components = tuple(args.component) if args.component else cfg.components
    architectures = tuple(args.arch) if args.arch else cfg.architectures
    max_concurrency = cfg.max_concurrency if args.max_concurrency is None else int(args.max_concurrency)
    probe_concurrency = cfg.probe_concurrency if args.probe_concurrency is None else int(args.probe_concurrency)
    cache_ttl_s = cfg.cache_ttl_s if args.cache_ttl is None else int(args.cache_ttl)

    return AppConfig(
        index=index,
        components=components,
        architectures=architectures,
        check_files=cfg.check_files or bool(args.check_files),
        max_concurrency=max_concurrency,
        probe_concurrency=probe_concurrency,
        cache_ttl_s=cache_ttl_s,
        use_cache=cfg.use_cache or bool(args.probe_cache),
        refresh=cfg.refresh or bool(args.refresh),
        log_level=(args.log_level or cfg.log_level).upper(),
    )


def main(argv: list[str] | None = None) -> int:
    """
    apt-check 命令行入口：0 表示无发现，1 表示发现问题，2 表示无法完成检查。
    """
    args = build_parser().parse_args(argv)

    if args.version:
        from apt_check import __version__

        print(__version__)
        return EXIT_OK

    try:
        cfg = _merge_cli_overrides(load_config(args.config), args)
    except (OSError, ValueError) as exc:
        print(f"apt-check: 配置加载失败：{exc}", file=sys.stderr)
        return EXIT_FATAL

    from apt_check.app import run_check
    from apt_check.logs import configure_logging

    configure_logging(cfg.log_level)

    try:
        success, report = run_check(cfg)
    except Exception as exc:
        print(f"apt-check: 仓库检查失败：{exc}", file=sys.stderr)
        return EXIT_FATAL

    try:
        _write_report(report, args.format, args.output)
    except OSError as exc:
        print(f"apt-check: 保存报告失败：{exc}", file=sys.stderr)
        return EXIT_FATAL

    print("仓库检查通过。" if success else "检查发现问题，详见日志与报告。", file=sys.stderr)
    return EXIT_OK if success else EXIT_FINDINGS


def _write_report(report: Report, fmt: str, output: str | None) -> None:
    """
    按格式渲染报告，写入 output 文件或 stdout。
    """
    from apt_check import formatters

    if fmt == "table":
        if output is None:
            formatters.print_table(report)
            return
        with Path(output).open("w", encoding="utf-8") as fh:
            formatters.print_table(report, file=fh)
        return

    text = formatters.render_json(report) if fmt == "json" else formatters.render_markdown(report)
    if output is None:
        print(text)
    else:
        Path(output).write_text(text, encoding="utf-8")


if __name__ == "__main__":
    raise SystemExit(main())
