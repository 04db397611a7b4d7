"""depkit - 依赖包安装引擎"""

__version__ = "0.3.0"
