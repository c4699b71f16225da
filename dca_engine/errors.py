"""
DCA Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of exchange gateway failures.

ERROR CATEGORIES:
1. Transient - network/timeout/rate limit, retried next cycle
2. Authentication - bad key, signature or clock skew
3. Validation - request violates symbol filters
4. Exchange - the exchange refused the request

RETRYABLE vs NON-RETRYABLE:
- Retryable: the next scheduled cycle may succeed
- Non-retryable: the same request will fail again

============================================================
"""

from enum import Enum
from typing import Dict
from dataclasses import dataclass


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    VALIDATION = "VALIDATION"
    EXCHANGE = "EXCHANGE"
    INTERNAL = "INTERNAL"


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    is_retryable: bool
    description: str


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== TRANSIENT ==========
    "NET_CONNECTION_FAILED": ErrorCodeInfo(
        code="NET_CONNECTION_FAILED",
        category=ErrorCategory.NETWORK,
        is_retryable=True,
        description="Could not reach the exchange",
    ),
    "TMO_READ": ErrorCodeInfo(
        code="TMO_READ",
        category=ErrorCategory.TIMEOUT,
        is_retryable=True,
        description="Exchange request timed out",
    ),
    "RTE_API_WEIGHT": ErrorCodeInfo(
        code="RTE_API_WEIGHT",
        category=ErrorCategory.RATE_LIMIT,
        is_retryable=True,
        description="Request weight limit exceeded",
    ),
    "RTE_ORDER_LIMIT": ErrorCodeInfo(
        code="RTE_ORDER_LIMIT",
        category=ErrorCategory.RATE_LIMIT,
        is_retryable=True,
        description="Order count limit exceeded",
    ),
    "EXC_SERVER_ERROR": ErrorCodeInfo(
        code="EXC_SERVER_ERROR",
        category=ErrorCategory.EXCHANGE,
        is_retryable=True,
        description="Exchange internal error or unknown execution status",
    ),

    # ========== AUTHENTICATION ==========
    "AUT_INVALID_KEY": ErrorCodeInfo(
        code="AUT_INVALID_KEY",
        category=ErrorCategory.AUTHENTICATION,
        is_retryable=False,
        description="API key invalid or missing permissions",
    ),
    "AUT_SIGNATURE_FAILED": ErrorCodeInfo(
        code="AUT_SIGNATURE_FAILED",
        category=ErrorCategory.AUTHENTICATION,
        is_retryable=True,
        description="Signature rejected or timestamp outside recvWindow",
    ),

    # ========== VALIDATION ==========
    "VAL_INVALID_SYMBOL": ErrorCodeInfo(
        code="VAL_INVALID_SYMBOL",
        category=ErrorCategory.VALIDATION,
        is_retryable=False,
        description="Symbol is invalid or not tradeable",
    ),
    "VAL_INVALID_QUANTITY": ErrorCodeInfo(
        code="VAL_INVALID_QUANTITY",
        category=ErrorCategory.VALIDATION,
        is_retryable=False,
        description="Order quantity violates LOT_SIZE",
    ),
    "VAL_INVALID_PRICE": ErrorCodeInfo(
        code="VAL_INVALID_PRICE",
        category=ErrorCategory.VALIDATION,
        is_retryable=False,
        description="Order price violates PRICE_FILTER",
    ),
    "VAL_MISSING_FILTERS": ErrorCodeInfo(
        code="VAL_MISSING_FILTERS",
        category=ErrorCategory.VALIDATION,
        is_retryable=False,
        description="Symbol has no PRICE_FILTER or LOT_SIZE filter",
    ),

    # ========== EXCHANGE ==========
    "SUB_ORDER_REJECTED": ErrorCodeInfo(
        code="SUB_ORDER_REJECTED",
        category=ErrorCategory.EXCHANGE,
        is_retryable=False,
        description="New order rejected (often insufficient balance)",
    ),
    "EXC_ORDER_NOT_FOUND": ErrorCodeInfo(
        code="EXC_ORDER_NOT_FOUND",
        category=ErrorCategory.EXCHANGE,
        is_retryable=False,
        description="Order does not exist on the exchange",
    ),
    "EXC_CANCEL_REJECTED": ErrorCodeInfo(
        code="EXC_CANCEL_REJECTED",
        category=ErrorCategory.EXCHANGE,
        is_retryable=False,
        description="Cancel rejected by the exchange",
    ),
    "EXC_UNKNOWN_ERROR": ErrorCodeInfo(
        code="EXC_UNKNOWN_ERROR",
        category=ErrorCategory.EXCHANGE,
        is_retryable=False,
        description="Unmapped exchange error or unparseable response",
    ),
}


# ============================================================
# EXCHANGE ERROR CODE MAPPING
# ============================================================

# Binance spot error code to internal error code mapping
BINANCE_ERROR_MAPPING: Dict[int, str] = {
    -1000: "EXC_SERVER_ERROR",  # UNKNOWN
    -1001: "NET_CONNECTION_FAILED",  # DISCONNECTED
    -1003: "RTE_API_WEIGHT",  # TOO_MANY_REQUESTS
    -1006: "EXC_SERVER_ERROR",  # UNEXPECTED_RESP
    -1007: "TMO_READ",  # TIMEOUT
    -1013: "VAL_INVALID_QUANTITY",  # Filter failure
    -1015: "RTE_ORDER_LIMIT",  # TOO_MANY_ORDERS
    -1021: "AUT_SIGNATURE_FAILED",  # Timestamp outside recvWindow
    -1022: "AUT_SIGNATURE_FAILED",  # Signature invalid
    -1111: "VAL_INVALID_QUANTITY",  # Bad precision
    -1121: "VAL_INVALID_SYMBOL",  # Invalid symbol
    -2010: "SUB_ORDER_REJECTED",  # NEW_ORDER_REJECTED
    -2011: "EXC_CANCEL_REJECTED",  # CANCEL_REJECTED
    -2013: "EXC_ORDER_NOT_FOUND",  # NO_SUCH_ORDER
    -2014: "AUT_INVALID_KEY",  # BAD_API_KEY_FMT
    -2015: "AUT_INVALID_KEY",  # REJECTED_MBX_KEY
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Internal error code

    Returns:
        ErrorCodeInfo, or a generic non-retryable entry
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        is_retryable=False,
        description=f"Unknown error: {code}",
    ))


def map_binance_error(binance_code: int) -> str:
    """Map a Binance error code to an internal error code."""
    return BINANCE_ERROR_MAPPING.get(binance_code, "EXC_UNKNOWN_ERROR")


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable
