"""集中配置管理

Config 来自 YAML 配置文件（目录、缓存时效、并发度、默认注册表等），
InstallOptions 是单次安装调用的选项包，由 CLI 从命令行参数构造。
两者都作为显式对象传给 ServiceContainer，不存在全局单例。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

import yaml

from depkit.core.exceptions import ConfigError
from depkit.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "configs/default.yml"

# 缓存过期时间: 30 天
DEFAULT_CACHE_TTL_DAYS = 30

# 线程池上限；未配置时即为默认并发度
MAX_CONCURRENCY = 12

DEFAULT_MANIFEST_NAMES = ("depkit.json", "package.json")


def _default_cache_dir() -> str:
    return str(Path.home() / ".cache" / "depkit")


@dataclass
class Config:
    """框架全局配置"""

    # 目录
    out_dir: str = "deps"
    cache_dir: str = field(default_factory=_default_cache_dir)
    secrets_file: str = "depkit_secrets.json"

    # 清单文件候选名，按顺序尝试
    manifest_names: list[str] = field(
        default_factory=lambda: list(DEFAULT_MANIFEST_NAMES),
    )

    # 缓存
    cache_ttl_days: int = DEFAULT_CACHE_TTL_DAYS

    # 执行
    concurrency: int = MAX_CONCURRENCY

    # 网络
    fetch_timeout: int = 30
    fetch_retries: int = 2

    # 全局默认注册表: [{"name": ..., "url": ..., "auth": bool}]
    registries: list[dict] = field(default_factory=list)

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_days * 24 * 3600

    @classmethod
    def from_file(cls, path: str = DEFAULT_CONFIG_FILE) -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        try:
            data = load_yaml(path)
        except yaml.YAMLError as e:
            raise ConfigError(f"配置文件格式错误 {path}: {e}") from e
        if not data:
            return cls()
        known = {f.name for f in cls.__dataclass_fields__.values()}
        matched = {k: v for k, v in data.items() if k in known and k != "extra"}
        extra = {k: v for k, v in data.items() if k not in known}
        cfg = cls(**matched)
        cfg.extra = extra
        cfg.validate()
        logger.info("配置已加载: %s", path)
        return cfg

    def validate(self) -> None:
        if not self.manifest_names:
            raise ConfigError("manifest_names 不能为空")
        if self.cache_ttl_days < 0:
            raise ConfigError(f"cache_ttl_days 不能为负数: {self.cache_ttl_days}")
        if not isinstance(self.registries, list):
            raise ConfigError("registries 必须是列表")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class InstallOptions:
    """单次安装调用的选项包"""

    out_dir: str = "deps"
    prefix: str = ""
    token: str = ""
    verbose: bool = True
    dev: bool = False
    save: bool = False
    save_dev: bool = False
    force: bool = False
    global_install: bool = False
    skip_cache: bool = False
    concurrency: int = 0  # 0 表示使用 Config.concurrency

    def effective_concurrency(self, config: Config) -> int:
        """调用方指定优先，否则取配置；结果至少为 1"""
        value = self.concurrency or config.concurrency or MAX_CONCURRENCY
        return max(1, value)
