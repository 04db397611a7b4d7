"""服务容器 — 统一装配安装流水线的各个组件

所有组件由一份显式的 Config + InstallOptions 构造，懒加载并在容器内共享。
CLI 通过容器获取 Installer，测试可注入假的 HTTP 客户端和命令执行器。

依赖关系图（→ 表示依赖）:
  installer → registry_set, fetcher, writer
  registry_set → registry_manager → http, secrets, cache
  fetcher → http, cache, secrets

用法:
    container = ServiceContainer(Config.from_file(), InstallOptions(save=True))
    root = container.root_manifest
    report = container.installer.install(root, ["foo/bar@1.0"])
"""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from depkit.core.config import Config, InstallOptions
from depkit.core.dep.models import Registry
from depkit.core.exceptions import ConfigError, ValidationError

if TYPE_CHECKING:
    from depkit.core.dep.cache import PackageCache
    from depkit.core.dep.fetcher import PackageFetcher
    from depkit.core.dep.registry import RegistryManager, RegistrySet
    from depkit.core.dep.secrets import SecretsStore
    from depkit.core.installer import Installer
    from depkit.core.manifest import Manifest
    from depkit.core.manifest_writer import ManifestWriter
    from depkit.utils.http import HttpClient
    from depkit.utils.shell import CommandExecutor

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器 — 每个实例对应一次 CLI 调用"""

    def __init__(
        self,
        config: Config | None = None,
        options: InstallOptions | None = None,
        *,
        cwd: str | Path = ".",
        http: HttpClient | None = None,
        executor: CommandExecutor | None = None,
    ) -> None:
        self._config = config or Config()
        self._cwd = Path(cwd)
        options = options or InstallOptions(out_dir=self._config.out_dir)
        # 相对输出目录以 cwd 为基准
        self._options = replace(options, out_dir=str(self._cwd / options.out_dir))
        self._http = http
        self._executor = executor
        self._instances: dict[str, object] = {}

    @property
    def config(self) -> Config:
        return self._config

    @property
    def options(self) -> InstallOptions:
        return self._options

    # ---- 基础组件 ----

    @property
    def http(self) -> HttpClient:
        if self._http is None:
            from depkit.utils.http import UrllibClient
            self._http = UrllibClient(
                timeout=self._config.fetch_timeout,
                retries=self._config.fetch_retries,
            )
        return self._http

    @property
    def secrets(self) -> SecretsStore:
        if "secrets" not in self._instances:
            from depkit.core.dep.secrets import SecretsStore
            path = Path(self._config.secrets_file)
            if not path.is_absolute():
                path = self._cwd / path
            self._instances["secrets"] = SecretsStore.load_from_file(path)
        return self._instances["secrets"]  # type: ignore[return-value]

    @property
    def cache(self) -> PackageCache:
        if "cache" not in self._instances:
            from depkit.core.dep.cache import PackageCache
            self._instances["cache"] = PackageCache(
                self._config.cache_dir,
                self._config.cache_ttl_seconds,
                skip=self._options.skip_cache,
            )
        return self._instances["cache"]  # type: ignore[return-value]

    @property
    def root_manifest(self) -> Manifest | None:
        if "root_manifest" not in self._instances:
            from depkit.core.manifest import load_local
            self._instances["root_manifest"] = load_local(
                self._config.manifest_names, self._cwd,
            )
        return self._instances["root_manifest"]  # type: ignore[return-value]

    # ---- 注册表 ----

    def default_registries(self) -> list[Registry]:
        try:
            return [Registry.from_dict(r) for r in self._config.registries]
        except (ValidationError, AttributeError) as e:
            raise ConfigError(f"全局注册表配置无效: {e}") from e

    @property
    def registry_manager(self) -> RegistryManager:
        if "registry_manager" not in self._instances:
            from depkit.core.dep.registry import RegistryManager
            self._instances["registry_manager"] = RegistryManager(
                self.http, self.secrets, self.cache,
                token_override=self._options.token,
            )
        return self._instances["registry_manager"]  # type: ignore[return-value]

    @property
    def registry_set(self) -> RegistrySet:
        """合并并拉取目录后的注册表集合（首次访问时发起网络请求）"""
        if "registry_set" not in self._instances:
            from depkit.core.manifest import resolve_registries
            mgr = self.registry_manager
            rset = mgr.init_registries(
                resolve_registries(self.root_manifest), self.default_registries(),
            )
            self._instances["registry_set"] = mgr.fetch_registries(rset)
        return self._instances["registry_set"]  # type: ignore[return-value]

    # ---- 安装 ----

    @property
    def fetcher(self) -> PackageFetcher:
        if "fetcher" not in self._instances:
            from depkit.core.dep.fetcher import PackageFetcher
            self._instances["fetcher"] = PackageFetcher(
                self.http, self.cache, self.secrets,
                token_override=self._options.token,
                force=self._options.force,
            )
        return self._instances["fetcher"]  # type: ignore[return-value]

    @property
    def writer(self) -> ManifestWriter:
        if "writer" not in self._instances:
            from depkit.core.manifest_writer import ManifestWriter
            self._instances["writer"] = ManifestWriter(
                self._config.manifest_names, self._cwd,
            )
        return self._instances["writer"]  # type: ignore[return-value]

    @property
    def installer(self) -> Installer:
        if "installer" not in self._instances:
            from depkit.core.installer import Installer
            concurrency = self._options.effective_concurrency(self._config)
            logger.debug(
                "装配安装器: out_dir=%s, 并发度=%d", self._options.out_dir, concurrency,
            )
            self._instances["installer"] = Installer(
                registries=self.registry_set,
                fetcher=self.fetcher,
                options=self._options,
                manifest_names=self._config.manifest_names,
                concurrency=concurrency,
                writer=self.writer,
                executor=self._executor,
                global_dir=Path(self._config.cache_dir).expanduser() / "global",
                registry_manager=self.registry_manager,
            )
        return self._instances["installer"]  # type: ignore[return-value]
