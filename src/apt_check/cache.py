from __future__ import annotations

import os
import sqlite3
import sys
import threading
import time
from pathlib import Path

_SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS probe_cache (
    url TEXT PRIMARY KEY,
    checked_at INTEGER NOT NULL
);
"""


def default_cache_path() -> Path:
    """
    返回默认缓存数据库路径（用户目录下全局共用）。
    """
    if os.name == "nt":
        root = os.environ.get("LOCALAPPDATA") or os.environ.get("APPDATA")
        base = Path(root) if root else Path.home() / "AppData" / "Local"
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Caches"
    else:
        base = Path(os.environ.get("XDG_CACHE_HOME") or Path.home() / ".cache")
    return base / "apt-check" / "probes.sqlite3"


class ProbeCache:
    """
    制品探测结果的 SQLite 缓存，仅记录探测成功的 URL。

    schema 版本记录在 PRAGMA user_version 中；版本不一致时清空旧记录。
    """

    def __init__(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)
            (version,) = self._conn.execute("PRAGMA user_version").fetchone()
            if version != _SCHEMA_VERSION:
                self._conn.execute("DELETE FROM probe_cache")
                self._conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def is_known_good(self, url: str, *, ttl_s: int) -> bool:
        """
        URL 在 TTL 内探测成功过则返回 True；ttl_s=0 表示永不过期。
        """
        with self._lock:
            row = self._conn.execute("SELECT checked_at FROM probe_cache WHERE url = ?", (url,)).fetchone()
        if row is None:
            return False
        return ttl_s <= 0 or time.time() - row[0] <= ttl_s

    def mark_good(self, url: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO probe_cache(url, checked_at) VALUES(?, ?)",
                (url, int(time.time())),
            )

    def forget(self, url: str) -> None:
        """
        删除 URL 的缓存记录（探测失败时调用）。
        """
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM probe_cache WHERE url = ?", (url,))
