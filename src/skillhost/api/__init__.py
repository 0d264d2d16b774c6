"""
skillhost HTTP API

提供技能列表、目录、参考文档、重新加载、匹配与分发接口。
"""

from .server import create_app, start_api_server

__all__ = ["create_app", "start_api_server"]
