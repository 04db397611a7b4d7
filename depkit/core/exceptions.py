"""统一异常体系

所有业务异常继承 DepkitError，替代散落的 ValueError / RuntimeError。
CLI 层可据此输出一行友好提示，安装器可据此区分致命与可降级的失败。
"""

from __future__ import annotations


class DepkitError(Exception):
    """框架基础异常"""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(DepkitError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


class ValidationError(DepkitError):
    """输入数据校验失败（包标识、URL 协议等）"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class PackageNotFoundError(DepkitError):
    """包标识在所有注册表中都找不到"""

    code = "PACKAGE_NOT_FOUND"

    def __init__(self, package_id: str) -> None:
        super().__init__(f"包 '{package_id}' 不在任何注册表中")
        self.package_id = package_id


class FetchError(DepkitError):
    """网络下载或解包失败"""

    code = "FETCH_FAILED"


class AuthRequiredError(FetchError):
    """目标需要访问令牌，但未提供或被拒绝"""

    code = "AUTH_REQUIRED"


class ManifestParseError(DepkitError):
    """清单文件格式错误"""

    code = "MANIFEST_PARSE_ERROR"


class CacheDegradedError(DepkitError):
    """缓存目录不可用，缓存降级为直通"""

    code = "CACHE_DEGRADED"


class ManifestWriteError(DepkitError):
    """依赖写回清单失败"""

    code = "WRITE_FAILED"


class ExecutionError(DepkitError):
    """外部命令（构建步骤）执行失败"""

    code = "EXECUTION_ERROR"
