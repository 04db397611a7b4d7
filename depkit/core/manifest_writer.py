"""清单写回

把安装成功的依赖以 "author/name": "version" 写入项目清单的
dependencies 或 development 段。

- 每次都从磁盘重新读取文档，不使用内存中的 Manifest，避免覆盖外部修改
- 按候选文件名顺序尝试，第一个写入成功即停止
- 整个文档原子替换，失败不会留下半写的文件
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Sequence

from depkit.core.dep.models import PackageDescriptor
from depkit.core.exceptions import ManifestWriteError
from depkit.utils.json_io import load_json, save_json

logger = logging.getLogger(__name__)

SECTION_DEPENDENCIES = "dependencies"
SECTION_DEVELOPMENT = "development"


class ManifestWriter:
    """依赖写回器，写操作按实例串行化"""

    def __init__(self, names: Sequence[str], cwd: str | Path = ".") -> None:
        self.names = list(names)
        self.cwd = Path(cwd)
        self._lock = threading.Lock()

    def write_dependency(self, descriptor: PackageDescriptor, section: str) -> Path:
        """写入一条依赖，返回被写入的清单路径；全部候选失败抛 ManifestWriteError"""
        repo = descriptor.identifier.id
        version = descriptor.saved_version
        errors: list[str] = []
        with self._lock:
            for name in self.names:
                path = self.cwd / name
                try:
                    self._write_one(path, section, repo, version)
                except ManifestWriteError as e:
                    logger.debug("写入 %s 失败，尝试下一个: %s", path, e)
                    errors.append(str(e))
                    continue
                logger.info("已保存 %s@%s 到 %s (%s)", repo, version, path.name, section)
                return path
        raise ManifestWriteError(
            f"无法保存 {repo}@{version}: " + ("; ".join(errors) or "没有候选清单文件")
        )

    @staticmethod
    def _write_one(path: Path, section: str, repo: str, version: str) -> None:
        try:
            doc = load_json(path)
        except (json.JSONDecodeError, ValueError, OSError) as e:
            raise ManifestWriteError(f"{path}: 无法解析 ({e})") from e
        if doc is None:
            raise ManifestWriteError(f"{path}: 文件不存在")
        if not isinstance(doc, dict):
            raise ManifestWriteError(f"{path}: 顶层不是对象")

        deps = doc.get(section)
        if not isinstance(deps, dict):
            deps = doc[section] = {}
        deps[repo] = version

        try:
            save_json(path, doc)
        except (OSError, TypeError, ValueError) as e:
            raise ManifestWriteError(f"{path}: 写入失败 ({e})") from e

    def save_dependency(self, descriptor: PackageDescriptor) -> Path:
        return self.write_dependency(descriptor, SECTION_DEPENDENCIES)

    def save_dev_dependency(self, descriptor: PackageDescriptor) -> Path:
        return self.write_dependency(descriptor, SECTION_DEVELOPMENT)
