"""
Settlement codes and per-channel result tables.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # 6xxxx 渠道/回调
    SIGNATURE_ERROR = 60002
    MALFORMED_CALLBACK = 60005
    AMOUNT_MISMATCH = 60006
    UNSUPPORTED_METHOD = 60007

    # 7xxxx 学费结算
    EMPTY_SELECTION = 70001
    DUPLICATE_CLASS = 70002
    CROSS_BRANCH = 70003
    INVALID_AMOUNT = 70004
    REQUEST_NOT_PAYABLE = 70005
    ALREADY_SETTLED = 70006
    DIRECTORY_UNAVAILABLE = 70007


# Channel result code -> settlement outcome
CHANNEL_STATUS_TO_OUTCOME = {
    "gateway_x": {
        "00": "success",
        "24": "cancelled",
        # 07: debited but flagged as suspicious, still money moved
        "07": "success",
    },
    "cash": {
        "confirmed": "success",
        "rejected": "failed",
    },
}

# Human readable reasons for gateway_x result codes, stored as failure_reason
GATEWAY_X_RESPONSE_MESSAGES = {
    "00": "Transaction successful",
    "07": "Debited, transaction flagged as suspicious",
    "09": "Card/account not registered for internet banking",
    "10": "Card/account verification failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card/account locked",
    "13": "Wrong one-time password",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "Paying bank under maintenance",
    "79": "Wrong payment password too many times",
    "99": "Unknown error",
}
