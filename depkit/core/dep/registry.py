"""注册表管理

职责:
- 合并清单声明的注册表与全局默认注册表（按名称去重，清单优先）
- 拉取各注册表的目录（author/name → 源码地址），优先使用缓存
- 按顺序在目录中查找包标识，第一个命中的注册表胜出

目录格式（JSON 对象）:
    {"foo/bar": "https://example.com/foo/bar",
     "foo/baz": {"url": "https://example.com/foo/baz"}}

单个注册表拉取失败只记录日志并视为空目录，不影响其他注册表。
取自缓存的目录可能已过时: 查找未命中时，本次运行内重新拉取一次再查。
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator

from depkit.core.dep.cache import PackageCache
from depkit.core.dep.models import Registry
from depkit.core.dep.secrets import SecretsStore
from depkit.core.exceptions import AuthRequiredError, DepkitError, FetchError
from depkit.utils.http import HttpClient
from depkit.utils.json_io import parse_json
from depkit.utils.net import is_remote_url

logger = logging.getLogger(__name__)

_UNSAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.\-]")


@dataclass(frozen=True)
class RegistryMatch:
    """查找结果: 命中的注册表及包的源码地址"""

    registry: Registry
    url: str


class RegistrySet:
    """有序、按名称去重的注册表集合及其已拉取的目录"""

    def __init__(self, registries: Iterable[Registry] = ()) -> None:
        self._registries: list[Registry] = []
        self.catalogs: dict[str, dict[str, str]] = {}
        # 目录取自缓存、尚未在本次运行中重新拉取过的注册表
        self.from_cache: set[str] = set()
        for reg in registries:
            self.add(reg)

    def add(self, registry: Registry) -> bool:
        """追加注册表，同名已存在时忽略并返回 False"""
        if registry.name in self.names():
            return False
        self._registries.append(registry)
        return True

    def names(self) -> list[str]:
        return [r.name for r in self._registries]

    def get(self, name: str) -> Registry | None:
        for reg in self._registries:
            if reg.name == name:
                return reg
        return None

    def __iter__(self) -> Iterator[Registry]:
        return iter(self._registries)

    def __len__(self) -> int:
        return len(self._registries)


def parse_catalog(data: Any, *, source: str = "") -> dict[str, str]:
    """把目录文档规整为 {author/name: url}，跳过无法识别的条目"""
    if not isinstance(data, dict):
        raise FetchError(f"注册表目录格式错误 {source}: 顶层必须是对象")
    catalog: dict[str, str] = {}
    for pkg_id, entry in data.items():
        if isinstance(entry, str):
            url = entry
        elif isinstance(entry, dict):
            url = str(entry.get("url") or entry.get("href") or "")
        else:
            url = ""
        if not url:
            logger.debug("忽略无效目录条目 %s: %r", pkg_id, entry)
            continue
        catalog[str(pkg_id)] = url
    return catalog


class RegistryManager:
    """注册表管理器 - 合并、拉取目录、查找包"""

    def __init__(
        self,
        http: HttpClient,
        secrets: SecretsStore,
        cache: PackageCache | None = None,
        *,
        token_override: str = "",
    ) -> None:
        self.http = http
        self.secrets = secrets
        self.cache = cache
        self.token_override = token_override
        self._refresh_lock = threading.Lock()

    @staticmethod
    def init_registries(
        manifest_registries: Iterable[Registry] | None,
        defaults: Iterable[Registry] = (),
    ) -> RegistrySet:
        """构建合并后的注册表集合，清单声明的同名注册表优先"""
        rset = RegistrySet(manifest_registries or ())
        for reg in defaults:
            if not rset.add(reg):
                logger.debug("清单已声明注册表 %s，忽略全局同名项", reg.name)
        logger.debug("注册表顺序: %s", ", ".join(rset.names()) or "(空)")
        return rset

    def token_for(self, registry: Registry) -> str:
        if self.token_override:
            return self.token_override
        return self.secrets.token_for(registry.name, registry.url)

    @staticmethod
    def catalog_cache_key(registry: Registry) -> str:
        """目录缓存键: 注册表名 + URL 摘要，同名不同地址的注册表互不干扰"""
        digest = hashlib.sha256(registry.url.encode("utf-8")).hexdigest()[:12]
        name = _UNSAFE_KEY_RE.sub("_", registry.name)
        return f"registry-{name}-{digest}"

    def _cached_catalog(self, registry: Registry) -> dict[str, str] | None:
        if self.cache is None:
            return None
        cached = self.cache.read_json(self.catalog_cache_key(registry))
        if cached is None:
            return None
        logger.debug("注册表目录缓存命中: %s", registry.name)
        return parse_catalog(cached, source=registry.name)

    def fetch_catalog(self, registry: Registry, *, use_cache: bool = True) -> dict[str, str]:
        """拉取单个注册表目录，失败抛 FetchError / AuthRequiredError"""
        if use_cache:
            cached = self._cached_catalog(registry)
            if cached is not None:
                return cached

        if is_remote_url(registry.url):
            token = self.token_for(registry)
            if registry.auth and not token:
                raise AuthRequiredError(f"注册表 '{registry.name}' 需要访问令牌")
            raw = self.http.get(registry.url, token=token)
            text = raw.decode("utf-8")
        else:
            try:
                text = Path(registry.url).read_text(encoding="utf-8")
            except OSError as e:
                raise FetchError(f"无法读取注册表文件 {registry.url}: {e}") from e

        try:
            data = parse_json(text, source=registry.url)
        except json.JSONDecodeError as e:
            raise FetchError(f"注册表目录不是合法 JSON {registry.url}: {e}") from e
        catalog = parse_catalog(data, source=registry.name)
        if self.cache is not None:
            self.cache.save_json(self.catalog_cache_key(registry), catalog)
        return catalog

    def fetch_registries(self, rset: RegistrySet) -> RegistrySet:
        """拉取集合中每个注册表的目录；失败的注册表记为空目录"""
        for registry in rset:
            cached = self._cached_catalog(registry)
            if cached is not None:
                rset.catalogs[registry.name] = cached
                rset.from_cache.add(registry.name)
                continue
            try:
                rset.catalogs[registry.name] = self.fetch_catalog(registry, use_cache=False)
                logger.info(
                    "注册表 %s: %d 个包",
                    registry.name, len(rset.catalogs[registry.name]),
                )
            except (DepkitError, UnicodeDecodeError) as e:
                logger.error("注册表 %s 拉取失败，按空目录处理: %s", registry.name, e)
                rset.catalogs[registry.name] = {}
        return rset

    def refresh_cached(self, rset: RegistrySet) -> bool:
        """重新拉取取自缓存的目录，每个注册表在一次运行中最多一次

        返回是否有目录被刷新。拉取失败时保留缓存中的目录。
        """
        refreshed = False
        with self._refresh_lock:
            for registry in rset:
                if registry.name not in rset.from_cache:
                    continue
                rset.from_cache.discard(registry.name)
                try:
                    rset.catalogs[registry.name] = self.fetch_catalog(registry, use_cache=False)
                except (DepkitError, UnicodeDecodeError) as e:
                    logger.warning("刷新注册表 %s 失败，沿用缓存目录: %s", registry.name, e)
                    continue
                logger.info("已刷新注册表目录: %s", registry.name)
                refreshed = True
        return refreshed

    def lookup(self, rset: RegistrySet, package_id: str) -> RegistryMatch | None:
        """查找包；缓存目录中未命中时刷新这些目录再查一次"""
        match = self.find_package(rset, package_id)
        if match is None and self.refresh_cached(rset):
            match = self.find_package(rset, package_id)
        return match

    @staticmethod
    def find_package(rset: RegistrySet, package_id: str) -> RegistryMatch | None:
        """按注册表顺序查找 author/name，未找到返回 None（不是错误）"""
        for registry in rset:
            url = rset.catalogs.get(registry.name, {}).get(package_id)
            if url:
                logger.debug("在注册表 %s 中找到 %s -> %s", registry.name, package_id, url)
                return RegistryMatch(registry=registry, url=url)
        return None
