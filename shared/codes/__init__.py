"""
Business codes shared by domain, core and api.

Generic families live here; settlement codes are in ``shared.codes.payment_codes``.
"""
from enum import IntEnum


class BusinessCode(IntEnum):
    SUCCESS = 0

    # 1xxxx 参数
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # 2xxxx 业务
    BUSINESS_ERROR = 20000
    NOT_FOUND = 20006
    CONFLICT = 20007  # details.current 携带当前权威状态
    INVALID_STATE = 20008

    # 3xxxx 身份
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # 4xxxx 系统
    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003


__all__ = ["BusinessCode"]
