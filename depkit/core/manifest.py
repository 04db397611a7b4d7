"""项目清单模型

清单是 JSON 文档，候选文件名按配置顺序查找（默认 depkit.json → package.json）:

    {
      "name": "bar",
      "repo": "foo/bar",
      "version": "1.2.0",
      "dependencies": {"foo/baz": "0.3.1"},
      "development": {"foo/test-kit": "*"},
      "registries": [{"name": "corp", "url": "https://...", "auth": true}],
      "prefix": "/usr/local",
      "install": "make install"
    }

本地根清单解析失败只记录日志，安装按"无清单"继续；
拉取到的依赖包清单解析失败则抛 ManifestParseError，由安装器视为失败。
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from depkit.core.dep.models import ANY_VERSION, Registry
from depkit.core.exceptions import ManifestParseError, ValidationError
from depkit.utils.json_io import load_json

logger = logging.getLogger(__name__)


@dataclass
class Manifest:
    """清单文件的内存表示"""

    name: str = ""
    repo: str = ""
    version: str = ""
    dependencies: dict[str, str] = field(default_factory=dict)
    development: dict[str, str] = field(default_factory=dict)
    registries: list[Registry] = field(default_factory=list)
    prefix: str = ""
    install: str = ""
    path: Path | None = None

    @staticmethod
    def _dep_slugs(section: dict[str, str]) -> list[str]:
        slugs = []
        for repo, version in section.items():
            if version and version != ANY_VERSION:
                slugs.append(f"{repo}@{version}")
            else:
                slugs.append(repo)
        return slugs

    def dependency_slugs(self) -> list[str]:
        return self._dep_slugs(self.dependencies)

    def development_slugs(self) -> list[str]:
        return self._dep_slugs(self.development)


def _section(data: dict[str, Any], key: str, source: str) -> dict[str, str]:
    raw = data.get(key) or {}
    if not isinstance(raw, dict):
        raise ManifestParseError(f"{source}: '{key}' 必须是对象")
    # null 或空串的版本等同于 "*"
    return {str(k): ANY_VERSION if v is None or v == "" else str(v) for k, v in raw.items()}


def manifest_from_dict(data: Any, *, source: str = "<manifest>") -> Manifest:
    """把已解析的 JSON 文档转换为 Manifest，结构不符时抛 ManifestParseError"""
    if not isinstance(data, dict):
        raise ManifestParseError(f"{source}: 清单顶层必须是对象")

    raw_regs = data.get("registries") or []
    if not isinstance(raw_regs, list):
        raise ManifestParseError(f"{source}: 'registries' 必须是数组")
    try:
        registries = [Registry.from_dict(r) for r in raw_regs if isinstance(r, dict)]
    except ValidationError as e:
        raise ManifestParseError(f"{source}: {e}") from e

    return Manifest(
        name=str(data.get("name", "")),
        repo=str(data.get("repo", "")),
        version=str(data.get("version") or ""),
        dependencies=_section(data, "dependencies", source),
        development=_section(data, "development", source),
        registries=registries,
        prefix=str(data.get("prefix", "") or ""),
        install=str(data.get("install", "") or ""),
    )


def parse_manifest_file(path: Path) -> Manifest:
    """读取并解析单个清单文件"""
    try:
        data = load_json(path)
    except (json.JSONDecodeError, ValueError) as e:
        raise ManifestParseError(f"清单格式错误 {path}: {e}") from e
    manifest = manifest_from_dict(data, source=str(path))
    manifest.path = path
    return manifest


def find_manifest(directory: Path, names: Sequence[str]) -> Path | None:
    """按候选顺序返回目录下第一个存在的清单文件"""
    for name in names:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_local(names: Sequence[str], cwd: str | Path = ".") -> Manifest | None:
    """加载当前目录的项目清单

    不存在返回 None；格式错误记录日志后同样返回 None，
    因为大多数安装操作并不需要根清单。
    """
    path = find_manifest(Path(cwd), names)
    if path is None:
        logger.debug("当前目录没有清单文件: %s", ", ".join(names))
        return None
    try:
        manifest = parse_manifest_file(path)
    except (ManifestParseError, OSError) as e:
        logger.error("无法解析本地清单，按无清单继续: %s", e)
        return None
    logger.debug("已加载本地清单: %s", path)
    return manifest


def load_manifest_dir(directory: Path, names: Sequence[str]) -> Manifest:
    """加载已拉取包目录中的清单

    没有清单的包视为无依赖；格式错误抛 ManifestParseError。
    """
    path = find_manifest(directory, names)
    if path is None:
        return Manifest()
    return parse_manifest_file(path)


def resolve_registries(manifest: Manifest | None) -> list[Registry]:
    """返回清单声明的注册表，无清单时为空"""
    if manifest is None:
        return []
    return list(manifest.registries)
