"""JSON 文件统一读写工具

清单、注册表目录、密钥文件和缓存元数据都是 JSON 文档。
统一 encoding="utf-8"、键顺序保持、原子写入。
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# 单个 JSON 文档最大大小限制 (10MB)
MAX_JSON_SIZE = 10 * 1024 * 1024


def atomic_write(path: Path, content: str) -> None:
    """原子写入文件：先写临时文件再 rename，防止中途崩溃导致损坏

    实现:
        1. 在同目录创建临时文件
        2. 写入内容到临时文件
        3. os.replace 原子性地替换目标文件
        4. 如果失败，清理临时文件后重新抛出
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, str(path))
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            # 临时文件清理失败不影响原异常抛出
            pass
        raise


def parse_json(text: str, *, source: str = "<string>") -> Any:
    """解析 JSON 文本，保持对象键顺序

    异常:
        json.JSONDecodeError: 文本不是合法 JSON
    """
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug("解析 JSON 失败: %s, 错误: %s", source, e)
        raise


def load_json(path: str | Path) -> Any:
    """读取 JSON 文件

    返回:
        解析结果；文件不存在时返回 None

    异常:
        json.JSONDecodeError: JSON 格式错误
        OSError: IO 错误
        ValueError: 文件过大
    """
    p = Path(path)
    if not p.exists():
        return None

    file_size = p.stat().st_size
    if file_size > MAX_JSON_SIZE:
        raise ValueError(
            f"JSON 文件过大: {p} ({file_size} 字节), "
            f"超过限制 {MAX_JSON_SIZE} 字节"
        )
    return parse_json(p.read_text(encoding="utf-8"), source=str(p))


def dump_json(data: Any) -> str:
    """序列化为带缩进的 JSON 文本（末尾换行）"""
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def save_json(path: str | Path, data: Any) -> None:
    """原子写入 JSON 文件

    异常:
        TypeError / ValueError: 数据不可序列化
        OSError: 文件写入失败
    """
    content = dump_json(data)
    atomic_write(Path(path), content)
