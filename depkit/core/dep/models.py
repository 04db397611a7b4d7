"""依赖包数据模型

数据类:
- PackageIdentifier: 包标识 author/name[@version]
- Registry: 注册表条目
- PackageDescriptor: 一次安装尝试的可安装单元
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from depkit.core.exceptions import ValidationError

ANY_VERSION = "*"
DEFAULT_REF = "master"

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")
_UNSAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.\-]")


def is_local_target(slug: str) -> bool:
    """判断安装目标是否指向本地路径而非注册表标识

    以 "." 开头（".", "./", "./vendor/x", "../x"）或指向已存在的文件/目录。
    """
    if slug.startswith("."):
        return True
    return os.path.exists(slug)


@dataclass(frozen=True)
class PackageIdentifier:
    """包标识，解析自 author/name[@version]"""

    author: str
    name: str
    version: str = ANY_VERSION

    @classmethod
    def parse(cls, slug: str) -> PackageIdentifier:
        """解析 slug，author 和 name 缺失或含非法字符时抛 ValidationError"""
        text = slug.strip()
        version = ANY_VERSION
        if "@" in text:
            text, version = text.split("@", 1)
            version = version.strip() or ANY_VERSION

        author, sep, name = text.partition("/")
        if not sep or not author or not name:
            raise ValidationError(f"无效的包标识 '{slug}'，格式应为 author/name[@version]")
        for part in (author, name):
            if not _SEGMENT_RE.match(part):
                raise ValidationError(f"包标识含非法字符: '{slug}'")
        return cls(author=author, name=name, version=version)

    @property
    def id(self) -> str:
        """不带版本的注册表键 author/name"""
        return f"{self.author}/{self.name}"

    @property
    def slug(self) -> str:
        if self.version == ANY_VERSION:
            return self.id
        return f"{self.id}@{self.version}"

    @property
    def ref(self) -> str:
        """下载时使用的版本引用，"*" 取默认分支"""
        return DEFAULT_REF if self.version == ANY_VERSION else self.version

    @property
    def cache_key(self) -> str:
        """缓存目录名 author_name_ref，只含文件名安全字符"""
        raw = f"{self.author}_{self.name}_{self.ref}"
        return _UNSAFE_KEY_RE.sub("_", raw)

    def __str__(self) -> str:
        return self.slug


@dataclass(frozen=True)
class Registry:
    """单个注册表: 名称 + 目录地址"""

    name: str
    url: str
    auth: bool = False  # 拉取目录和包源码是否必须携带令牌

    @classmethod
    def from_dict(cls, data: dict) -> Registry:
        name = str(data.get("name", "")).strip()
        url = str(data.get("url", "")).strip()
        if not name or not url:
            raise ValidationError(f"注册表条目缺少 name 或 url: {data}")
        return cls(name=name, url=url, auth=bool(data.get("auth", False)))

    def to_dict(self) -> dict:
        data: dict = {"name": self.name, "url": self.url}
        if self.auth:
            data["auth"] = True
        return data


@dataclass
class PackageDescriptor:
    """已解析的可安装单元，仅在一次安装尝试内由安装器持有"""

    identifier: PackageIdentifier
    source: str                  # 源码地址（URL 或本地路径）
    prefix: str = ""
    global_install: bool = False
    registry: Registry | None = None   # 解析出该包的注册表，用于查找令牌
    dependencies: list[str] = field(default_factory=list)
    development: list[str] = field(default_factory=list)
    registries: list[Registry] = field(default_factory=list)
    manifest_version: str = ""   # 拉取后清单中声明的版本

    @property
    def name(self) -> str:
        return self.identifier.name

    @property
    def is_local(self) -> bool:
        return Path(self.source).is_dir()

    @property
    def saved_version(self) -> str:
        """写回清单时使用的版本"""
        if self.identifier.version != ANY_VERSION:
            return self.identifier.version
        return self.manifest_version or ANY_VERSION
