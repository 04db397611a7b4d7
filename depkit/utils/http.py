"""HTTP 拉取工具 — 注册表目录和包源码下载的统一入口

通过 HttpClient 协议抽象网络访问，测试时注入假实现即可，无需 patch urllib。

重试策略:
  - 单次请求超时 timeout 秒（默认 30）
  - 连接错误、超时和 5xx 响应最多重试 retries 次，间隔线性递增
  - 4xx 响应不重试；401/403 转为 AuthRequiredError
"""

from __future__ import annotations

import logging
import time
import urllib.error
import urllib.request
from typing import Protocol

from depkit.core.exceptions import AuthRequiredError, FetchError
from depkit.utils.net import validate_url_scheme

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_RETRIES = 2
_AUTH_STATUS = frozenset((401, 403))


class HttpClient(Protocol):
    """HTTP 客户端协议 — GET 一个 URL，返回响应体字节"""

    def get(self, url: str, *, token: str = "") -> bytes:
        """下载 url 的内容，失败抛 FetchError / AuthRequiredError"""
        ...


class UrllibClient:
    """基于 urllib 的默认实现，附带超时与有限重试"""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        backoff: float = 0.5,
    ) -> None:
        self.timeout = timeout
        self.retries = max(0, retries)
        self.backoff = backoff

    def get(self, url: str, *, token: str = "") -> bytes:
        validate_url_scheme(url, context="fetch")
        req = urllib.request.Request(url)
        if token:
            req.add_header("Authorization", f"Bearer {token}")

        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # nosec B310
                    return resp.read()
            except urllib.error.HTTPError as e:
                if e.code in _AUTH_STATUS:
                    raise AuthRequiredError(
                        f"访问被拒绝 (HTTP {e.code}): {url}"
                        + ("" if token else "，未提供访问令牌")
                    ) from e
                if e.code < 500 or attempt == attempts:
                    raise FetchError(f"下载失败 (HTTP {e.code}): {url}") from e
                logger.warning("下载失败 (HTTP %d)，第 %d 次重试: %s", e.code, attempt, url)
            except (urllib.error.URLError, TimeoutError, OSError) as e:
                if attempt == attempts:
                    raise FetchError(f"下载失败: {url} - {e}") from e
                logger.warning("下载失败 (%s)，第 %d 次重试: %s", e, attempt, url)
            time.sleep(self.backoff * attempt)

        # 循环内最后一次尝试必然 return 或 raise
        raise FetchError(f"下载失败: {url}")
