"""依赖包本地缓存

职责:
- 以包标识 (author/name/ref) 为键缓存已下载的包源码
- 缓存注册表目录等 JSON 文档
- 按存入时间判定过期（默认 30 天），过期条目视为未命中

磁盘布局:
    <root>/packages/<key>/meta.json   {"key": ..., "stored_at": <epoch 秒>}
    <root>/packages/<key>/payload/    包源码
    <root>/json/<key>.json            {"stored_at": ..., "data": ...}

写入是原子的: 先在 <root>/tmp 下组装完整条目（含 meta.json），再 rename 到位。
中途崩溃只会留下临时目录，不会出现被判为有效的半成品条目。
同一进程内同一键的写入由键级锁串行化；跨进程时最后一次 rename 生效，
因为同一版本的包内容不可变。

缓存目录无法创建或写入时降级为直通（永远未命中），不中断安装。
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable

from depkit.core.exceptions import CacheDegradedError
from depkit.utils.json_io import atomic_write, dump_json, load_json

logger = logging.getLogger(__name__)

_META = "meta.json"
_PAYLOAD = "payload"


class PackageCache:
    """带过期时间的本地包缓存"""

    def __init__(
        self,
        root: str | Path,
        ttl: float,
        *,
        skip: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root).expanduser()
        self.ttl = ttl
        self.skip = skip
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.enabled = True
        try:
            self._ensure_dirs()
        except CacheDegradedError as e:
            self.enabled = False
            logger.warning("%s，缓存降级为直通", e)

    def _ensure_dirs(self) -> None:
        try:
            for sub in ("packages", "json", "tmp"):
                (self.root / sub).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheDegradedError(f"缓存目录不可用: {self.root} ({e})") from e

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _entry_dir(self, key: str) -> Path:
        return self.root / "packages" / key

    def _fresh(self, stored_at: float) -> bool:
        return self._clock() - stored_at < self.ttl

    # ------------------------------------------------------------------
    # 包源码
    # ------------------------------------------------------------------

    def stored_at(self, key: str) -> float | None:
        """返回条目的存入时间，条目不存在或元数据损坏时返回 None"""
        try:
            meta = load_json(self._entry_dir(key) / _META)
        except (OSError, ValueError):
            return None
        if not isinstance(meta, dict):
            return None
        value = meta.get("stored_at")
        return float(value) if isinstance(value, (int, float)) else None

    def is_cached(self, key: str) -> bool:
        """条目存在且未过期才算命中；skip 或降级时永远未命中"""
        if self.skip or not self.enabled:
            return False
        stored = self.stored_at(key)
        if stored is None:
            return False
        if not self._fresh(stored):
            logger.debug("缓存已过期: %s", key)
            return False
        return (self._entry_dir(key) / _PAYLOAD).is_dir()

    def load(self, key: str, dest: Path) -> bool:
        """把命中的条目复制到 dest，未命中返回 False"""
        if not self.is_cached(key):
            return False
        try:
            shutil.copytree(self._entry_dir(key) / _PAYLOAD, dest, dirs_exist_ok=True)
        except OSError as e:
            logger.warning("读取缓存失败，按未命中处理: %s (%s)", key, e)
            return False
        logger.info("缓存命中: %s -> %s", key, dest)
        return True

    def store(self, key: str, src: Path) -> bool:
        """原子写入一个条目（src 目录内容作为 payload）

        skip 时不写入；写入失败只记录日志，返回 False。
        """
        if self.skip or not self.enabled:
            return False
        with self._lock_for(key):
            try:
                self._store_locked(key, src)
            except OSError as e:
                logger.warning("写入缓存失败: %s (%s)", key, e)
                return False
        logger.debug("已缓存: %s", key)
        return True

    def _store_locked(self, key: str, src: Path) -> None:
        staging = Path(tempfile.mkdtemp(prefix=f"{key}.", dir=str(self.root / "tmp")))
        try:
            shutil.copytree(src, staging / _PAYLOAD)
            (staging / _META).write_text(
                dump_json({"key": key, "stored_at": self._clock()}),
                encoding="utf-8",
            )
            final = self._entry_dir(key)
            if final.exists():
                # 旧条目先移走再 rename，rename 目标必须不存在
                trash = Path(tempfile.mkdtemp(prefix=f"{key}.old.", dir=str(self.root / "tmp")))
                os.replace(final, trash / key)
                shutil.rmtree(trash, ignore_errors=True)
            try:
                os.replace(staging, final)
            except OSError:
                if not final.exists():
                    raise
                # 另一进程抢先写入了同一版本，内容相同，沿用对方的条目
                logger.debug("缓存条目已由其他进程写入: %s", key)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    def evict(self, key: str) -> bool:
        """删除一个条目，返回是否确有删除"""
        entry = self._entry_dir(key)
        with self._lock_for(key):
            if not entry.exists():
                return False
            shutil.rmtree(entry, ignore_errors=True)
        logger.info("已清除缓存: %s", key)
        return True

    def clear(self) -> int:
        """删除全部条目（包和 JSON），返回删除的条目数"""
        removed = 0
        for sub in ("packages", "json"):
            base = self.root / sub
            if not base.exists():
                continue
            for child in base.iterdir():
                if child.is_dir():
                    shutil.rmtree(child, ignore_errors=True)
                else:
                    child.unlink(missing_ok=True)
                removed += 1
        logger.info("已清空缓存目录: %s (%d 项)", self.root, removed)
        return removed

    def list_entries(self) -> list[dict[str, Any]]:
        """列出包条目: key / stored_at / expired"""
        base = self.root / "packages"
        if not base.exists():
            return []
        entries = []
        for child in sorted(base.iterdir()):
            stored = self.stored_at(child.name)
            if stored is None:
                continue
            entries.append({
                "key": child.name,
                "stored_at": stored,
                "expired": not self._fresh(stored),
            })
        return entries

    # ------------------------------------------------------------------
    # JSON 文档（注册表目录等）
    # ------------------------------------------------------------------

    def _json_path(self, key: str) -> Path:
        return self.root / "json" / f"{key}.json"

    def read_json(self, key: str) -> Any | None:
        """读取未过期的 JSON 文档，未命中返回 None"""
        if self.skip or not self.enabled:
            return None
        try:
            doc = load_json(self._json_path(key))
        except (OSError, ValueError) as e:
            # json.JSONDecodeError 是 ValueError 的子类
            logger.debug("缓存文档不可读: %s (%s)", key, e)
            return None
        if not isinstance(doc, dict) or "data" not in doc:
            return None
        stored = doc.get("stored_at")
        if not isinstance(stored, (int, float)) or not self._fresh(stored):
            return None
        return doc["data"]

    def save_json(self, key: str, data: Any) -> bool:
        if self.skip or not self.enabled:
            return False
        try:
            content = dump_json({"stored_at": self._clock(), "data": data})
            with self._lock_for(f"json:{key}"):
                atomic_write(self._json_path(key), content)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("写入缓存文档失败: %s (%s)", key, e)
            return False
        return True

