"""depkit 日志配置

日志统一写 stderr，stdout 只留给命令结果（如 cache list 的表格）。
并发安装时多个包的日志交错输出，两种格式都带上工作线程名。
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

TEXT_FORMAT = "%(asctime)s [%(levelname)-7s] %(threadName)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """每条日志一行 JSON，供 CI 流水线解析安装过程

    输出格式:
        {"timestamp": "2024-01-01T12:00:00+00:00", "level": "INFO",
         "logger": "depkit.core.installer", "message": "已安装 foo/bar",
         "thread": "depkit-install_0", "line": 42,
         "exception": "traceback..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "line": record.lineno,
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """按 CLI 选项配置根日志器，重复调用只保留一个 handler

    level 无法识别时按 INFO 处理。
    """
    reset_logging()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)


def reset_logging() -> None:
    """移除并关闭根日志器上的全部 handler"""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
