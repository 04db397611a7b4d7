"""访问令牌存储

密钥文件是可选的本地 JSON 文档，键为注册表名或主机名:

    {"github.com": "ghp_xxx", "corp": "token-for-corp-registry"}

进程内加载一次，之后只读，可在线程间无锁共享。
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from depkit.utils.json_io import load_json
from depkit.utils.net import url_host

logger = logging.getLogger(__name__)


class SecretsStore:
    """只读的令牌表"""

    def __init__(self, table: Mapping[str, str] | None = None) -> None:
        self._table: Mapping[str, str] = MappingProxyType(
            {k.lower(): v for k, v in (table or {}).items()},
        )

    @classmethod
    def load_from_file(cls, path: str | Path) -> SecretsStore:
        """解析密钥文件；文件不存在或格式错误时返回空表"""
        try:
            data = load_json(path)
        except (json.JSONDecodeError, ValueError, OSError) as e:
            logger.error("密钥文件无法解析，忽略: %s (%s)", path, e)
            return cls()
        if data is None:
            logger.debug("密钥文件不存在: %s", path)
            return cls()
        if not isinstance(data, dict):
            logger.error("密钥文件顶层必须是对象，忽略: %s", path)
            return cls()
        table = {str(k): str(v) for k, v in data.items() if isinstance(v, str) and v}
        logger.debug("已加载 %d 个访问令牌", len(table))
        return cls(table)

    def get(self, name: str) -> str:
        return self._table.get(name.lower(), "")

    def token_for(self, registry_name: str = "", url: str = "") -> str:
        """先按注册表名查找，再按 URL 主机名查找，找不到返回空串"""
        if registry_name:
            token = self.get(registry_name)
            if token:
                return token
        if url:
            return self.get(url_host(url))
        return ""

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._table
