"""
学生目录服务客户端（只读）

学生、班级、分校数据由目录服务维护，结算子系统只读取
"""
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from application.dtos.billing import BranchInfo, ClassInfo, StudentProfile
from core.logging_config import get_logger
from domain.billing.exceptions import DirectoryUnavailableException

from .base import APIError, BaseAPIClient, NotFoundError


logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def _unwrap(payload: Any) -> Any:
    # 兼容 {"code":0,"data":{...}} 包装格式
    if isinstance(payload, dict) and "data" in payload and isinstance(payload["data"], dict):
        return payload["data"]
    return payload


class HttpStudentDirectory(BaseAPIClient):
    """通过 REST 读取学生/班级/分校

    404 视为不存在返回 None；网络错误、5xx、重试耗尽统一抛 DirectoryUnavailableException
    """

    async def _fetch(self, endpoint: str, model: Type[M], resource_id: str) -> Optional[M]:
        try:
            payload = await self.get_json(endpoint)
        except NotFoundError:
            return None
        except APIError as exc:
            logger.warning("directory_unavailable", endpoint=endpoint, error=str(exc))
            raise DirectoryUnavailableException(details={"endpoint": endpoint, "status_code": exc.status_code}) from exc
        try:
            return model.model_validate(_unwrap(payload))
        except ValidationError as exc:
            logger.warning("directory_payload_invalid", endpoint=endpoint, resource_id=resource_id, error=str(exc))
            raise DirectoryUnavailableException("Student directory returned an invalid payload") from exc

    async def get_student(self, student_id: str) -> Optional[StudentProfile]:
        return await self._fetch(f"students/{student_id}", StudentProfile, student_id)

    async def get_class(self, class_id: str) -> Optional[ClassInfo]:
        return await self._fetch(f"classes/{class_id}", ClassInfo, class_id)

    async def get_branch(self, branch_id: str) -> Optional[BranchInfo]:
        return await self._fetch(f"branches/{branch_id}", BranchInfo, branch_id)
