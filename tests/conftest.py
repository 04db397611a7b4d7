"""测试共享 fixture — 假 HTTP 客户端 + 模拟注册表

整体结构:

  PackageWorld.publish("foo/bar", deps={...})
      │  生成 tar.gz 源码包（内含 depkit.json）
      │  登记到注册表目录 CATALOG_URL
      ▼
  FakeHttp.routes = {CATALOG_URL: 目录 JSON, <源码地址>/archive/<ref>.tar.gz: 源码包}
      ▼
  world.container(InstallOptions(...)) → ServiceContainer(http=FakeHttp)
      ▼
  container.installer.install(...)，断言 world.http.calls / 磁盘结果
"""

from __future__ import annotations

import io
import json
import tarfile
import threading
from pathlib import Path
from typing import Any

import pytest

from depkit.core.config import Config, InstallOptions
from depkit.core.exceptions import FetchError
from depkit.services.container import ServiceContainer

CATALOG_URL = "https://registry.example.com/index.json"
SOURCE_BASE = "https://example.com"


class FakeHttp:
    """按 URL 返回预置内容的 HttpClient，记录每次请求"""

    def __init__(self, routes: dict[str, Any] | None = None) -> None:
        self.routes: dict[str, Any] = dict(routes or {})
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def get(self, url: str, *, token: str = "") -> bytes:
        with self._lock:
            self.calls.append((url, token))
        resp = self.routes.get(url)
        if resp is None:
            raise FetchError(f"下载失败 (HTTP 404): {url}")
        if isinstance(resp, Exception):
            raise resp
        return resp

    def count(self, fragment: str) -> int:
        return sum(1 for url, _ in self.calls if fragment in url)


def make_tarball(files: dict[str, str], top: str = "pkg") -> bytes:
    """构造 gzip tar 包，所有文件放在 top/ 目录下"""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for rel, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name=f"{top}/{rel}" if top else rel)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class PackageWorld:
    """一个注册表 + 若干已发布的包"""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.project = root / "project"
        self.project.mkdir(parents=True, exist_ok=True)
        self.cache_dir = root / "cache"
        self.http = FakeHttp()
        self.catalog: dict[str, str] = {}
        self._sync_catalog()

    def _sync_catalog(self) -> None:
        self.http.routes[CATALOG_URL] = json.dumps(self.catalog).encode("utf-8")

    def publish(
        self,
        pkg_id: str,
        *,
        ref: str = "master",
        version: str = "",
        deps: dict[str, str] | None = None,
        dev: dict[str, str] | None = None,
        install: str = "",
        raw_manifest: str | None = None,
    ) -> str:
        """发布一个包版本，返回其源码包 URL"""
        name = pkg_id.split("/", 1)[1]
        source = f"{SOURCE_BASE}/{pkg_id}"
        self.catalog[pkg_id] = source
        self._sync_catalog()

        manifest: dict[str, Any] = {
            "name": name,
            "repo": pkg_id,
            "version": version or ref,
            "dependencies": deps or {},
            "development": dev or {},
        }
        if install:
            manifest["install"] = install
        text = raw_manifest if raw_manifest is not None else json.dumps(manifest)
        archive = f"{source}/archive/{ref}.tar.gz"
        self.http.routes[archive] = make_tarball(
            {"depkit.json": text, f"src/{name}.c": f"/* {pkg_id}@{ref} */\n"},
            top=f"{name}-{ref}",
        )
        return archive

    def write_root(self, **fields: Any) -> Path:
        path = self.project / "depkit.json"
        path.write_text(json.dumps({"name": "project", **fields}), encoding="utf-8")
        return path

    def config(self, **overrides: Any) -> Config:
        values: dict[str, Any] = {
            "cache_dir": str(self.cache_dir),
            "registries": [{"name": "main", "url": CATALOG_URL}],
            "concurrency": 4,
        }
        values.update(overrides)
        return Config(**values)

    def container(
        self, options: InstallOptions | None = None, **config_overrides: Any,
    ) -> ServiceContainer:
        return ServiceContainer(
            self.config(**config_overrides),
            options or InstallOptions(),
            cwd=self.project,
            http=self.http,
        )

    def archive_fetches(self, fragment: str = "/archive/") -> int:
        return self.http.count(fragment)


@pytest.fixture()
def world(tmp_path: Path) -> PackageWorld:
    return PackageWorld(tmp_path)


@pytest.fixture()
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture()
def tarball():
    """make_tarball 构造函数"""
    return make_tarball
