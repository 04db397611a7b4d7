"""依赖包解析与拉取

- models.py: 包标识 / 注册表 / 安装单元
- cache.py: 带过期时间的本地缓存
- secrets.py: 访问令牌
- registry.py: 注册表合并与查找
- fetcher.py: 源码拉取
"""

from depkit.core.dep.cache import PackageCache
from depkit.core.dep.fetcher import PackageFetcher
from depkit.core.dep.models import PackageDescriptor, PackageIdentifier, Registry
from depkit.core.dep.registry import RegistryManager, RegistryMatch, RegistrySet
from depkit.core.dep.secrets import SecretsStore

__all__ = [
    "PackageCache",
    "PackageDescriptor",
    "PackageFetcher",
    "PackageIdentifier",
    "Registry",
    "RegistryManager",
    "RegistryMatch",
    "RegistrySet",
    "SecretsStore",
]
