"""外部 REST 服务客户端"""
from .base import APIError, BaseAPIClient, NotFoundError
from .directory import HttpStudentDirectory

__all__ = ["APIError", "BaseAPIClient", "NotFoundError", "HttpStudentDirectory"]
