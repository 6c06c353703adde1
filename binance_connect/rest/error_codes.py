"""
Exchange error codes

REST error bodies look like {"code": -1121, "msg": "Invalid symbol."}.
Codes are grouped by range:

- <= -9000: filter failures
- -1000 .. -2999: common codes shared by every API
- <= -3000 (or >= 0): API-specific codes
"""
from enum import Enum, IntEnum
from typing import Any, Optional


class CommonCode(IntEnum):
    """Common error codes (10xx server/network, 11xx request, 20xx processing)"""
    UNKNOWN = -1000
    DISCONNECTED = -1001
    UNAUTHORIZED = -1002
    TOO_MANY_REQUESTS = -1003
    DUPLICATE_IP = -1004
    NO_SUCH_IP = -1005
    UNEXPECTED_RESPONSE = -1006
    TIMEOUT = -1007
    ERROR_MESSAGE_RECEIVED = -1010
    IP_NOT_ON_WHITELIST = -1011
    INVALID_MESSAGE = -1013
    UNKNOWN_ORDER_COMPOSITION = -1014
    TOO_MANY_ORDERS = -1015
    SERVICE_SHUTTING_DOWN = -1016
    UNSUPPORTED_OPERATION = -1020
    INVALID_TIMESTAMP = -1021
    INVALID_SIGNATURE = -1022
    START_TIME_GREATER_THAN_END_TIME = -1023
    NOT_FOUND_OR_ALLOWED = -1099
    ILLEGAL_CHARS = -1100
    TOO_MANY_PARAMETERS = -1101
    MANDATORY_PARAMETER_EMPTY_OR_MALFORMED = -1102
    UNKNOWN_PARAMETER = -1103
    UNREAD_PARAMETERS = -1104
    PARAMETER_EMPTY = -1105
    PARAMETER_NOT_REQUIRED = -1106
    BAD_PRECISION = -1111
    INVALID_TIME_IN_FORCE = -1115
    INVALID_ORDER_TYPE = -1116
    INVALID_SIDE = -1117
    BAD_INTERVAL = -1120
    BAD_SYMBOL = -1121
    INVALID_LISTEN_KEY = -1125
    INVALID_PARAMETER = -1130
    BAD_RECEIVE_WINDOW = -1131
    NEW_ORDER_REJECTED = -2010
    CANCEL_REJECTED = -2011
    NO_SUCH_ORDER = -2013
    BAD_API_KEY_FORMAT = -2014
    REJECTED_API_KEY_OR_IP = -2015
    BALANCE_NOT_SUFFICIENT = -2018
    MARGIN_NOT_SUFFICIENT = -2019


class StreamErrorCode(IntEnum):
    """Error codes returned by the stream server for control requests"""
    UNKNOWN_PROPERTY = 0
    INVALID_VALUE_TYPE = 1
    INVALID_REQUEST = 2
    INVALID_JSON = 3


class CodeRange(str, Enum):
    """Which table a code belongs to"""
    FILTER = "filter"
    COMMON = "common"
    API = "api"


def code_range(code: int) -> CodeRange:
    """Classify a numeric error code by range"""
    if code <= -9000:
        return CodeRange.FILTER
    if code <= -3000 or code >= 0:
        return CodeRange.API
    return CodeRange.COMMON


def parse_error_body(body: Any) -> tuple[Optional[int], str]:
    """
    Extract (code, msg) from a decoded error body

    Bodies that are not {"code", "msg"} objects yield (None, repr of body).
    """
    if isinstance(body, dict) and "code" in body:
        try:
            code = int(body["code"])
        except (TypeError, ValueError):
            code = None
        return code, str(body.get("msg", ""))
    return None, str(body) if body not in (None, b"", "") else ""


def describe_code(code: Optional[int]) -> str:
    """Human-readable name for a code, when one is known"""
    if code is None:
        return "unknown"
    try:
        return CommonCode(code).name
    except ValueError:
        return f"{code_range(code).value}:{code}"
