"""依赖包拉取器

职责:
- 本地路径包: 直接复制，不经过缓存和网络
- 远程包: 缓存优先，未命中时带令牌下载源码包（gzip tar），解包后写入缓存
- 把包源码放到 <dest_dir>/<name>/

下载地址:
  - 源码地址本身是 .tar.gz/.tgz: 直接使用，{version} 占位符替换为 ref
  - 其他: <源码地址>/archive/<ref>.tar.gz
"""

from __future__ import annotations

import io
import logging
import shutil
import tarfile
import tempfile
from pathlib import Path

from depkit.core.dep.cache import PackageCache
from depkit.core.dep.models import PackageDescriptor
from depkit.core.dep.secrets import SecretsStore
from depkit.core.exceptions import AuthRequiredError, FetchError
from depkit.utils.http import HttpClient

logger = logging.getLogger(__name__)

_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz")


def archive_url(descriptor: PackageDescriptor) -> str:
    """计算包源码包的下载地址"""
    ref = descriptor.identifier.ref
    url = descriptor.source.replace("{version}", ref)
    if url.endswith(_ARCHIVE_SUFFIXES):
        return url
    return f"{url.rstrip('/')}/archive/{ref}.tar.gz"


def extract_archive(data: bytes, dest: Path) -> Path:
    """解压 tar 包到 dest，返回源码根目录

    源码包通常只有一个顶层目录（如 bar-1.0/），此时返回该目录。
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tf:
            tf.extractall(path=str(dest), filter="data")  # noqa: S202
    except (tarfile.TarError, EOFError) as e:
        raise FetchError(f"源码包解压失败: {e}") from e

    entries = [p for p in dest.iterdir() if not p.name.startswith(".")]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest


class PackageFetcher:
    """依赖包拉取器 - 本地路径 / 缓存 / 网络"""

    def __init__(
        self,
        http: HttpClient,
        cache: PackageCache,
        secrets: SecretsStore,
        *,
        token_override: str = "",
        force: bool = False,
    ) -> None:
        self.http = http
        self.cache = cache
        self.secrets = secrets
        self.token_override = token_override
        self.force = force

    def token_for(self, descriptor: PackageDescriptor, url: str) -> str:
        if self.token_override:
            return self.token_override
        registry_name = descriptor.registry.name if descriptor.registry else ""
        return self.secrets.token_for(registry_name, url)

    def install(self, descriptor: PackageDescriptor, dest_dir: Path, verbose: bool = True) -> Path:
        """拉取单个包到 dest_dir/<name>/，返回包目录

        失败抛 FetchError / AuthRequiredError，不会留下有效的缓存条目。
        """
        log = logger.info if verbose else logger.debug
        target = dest_dir / descriptor.name

        if descriptor.is_local:
            log("复制本地包: %s -> %s", descriptor.source, target)
            self._replace_dir(Path(descriptor.source), target)
            return target

        key = descriptor.identifier.cache_key
        if not self.force and self.cache.is_cached(key):
            self._clear(target)
            if self.cache.load(key, target):
                log("使用缓存: %s", descriptor.identifier)
                return target

        url = archive_url(descriptor)
        token = self.token_for(descriptor, url)
        if descriptor.registry and descriptor.registry.auth and not token:
            raise AuthRequiredError(
                f"{descriptor.identifier}: 注册表 '{descriptor.registry.name}' 需要访问令牌"
            )

        log("下载: %s -> %s", descriptor.identifier, url)
        data = self.http.get(url, token=token)

        staging_root = dest_dir if dest_dir.exists() else None
        with tempfile.TemporaryDirectory(prefix=".fetch-", dir=staging_root) as tmp:
            src_root = extract_archive(data, Path(tmp) / "src")
            self.cache.store(key, src_root)
            self._replace_dir(src_root, target)
        log("已安装: %s -> %s", descriptor.identifier, target)
        return target

    @staticmethod
    def _clear(target: Path) -> None:
        if target.is_symlink() or target.is_file():
            target.unlink()
        elif target.exists():
            shutil.rmtree(target)

    def _replace_dir(self, src: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        self._clear(target)
        shutil.copytree(src, target)
