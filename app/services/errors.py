"""
资金托管与申诉处理的异常定义。

每个异常携带 HTTP 状态码和稳定的错误码，路由层统一转换为
{"error": ..., "code": ...} 响应，管理后台据 code 区分
"已被他人处理"、"金额无效" 与 "系统错误，请人工核对账本"。
"""


class EscrowError(Exception):
    """托管业务异常基类。"""

    status_code = 400
    code = "invalid_request"


class InvalidRequestError(EscrowError):
    """请求体格式错误或缺少必填字段。"""
    pass


class InvalidResolutionError(EscrowError):
    """裁决类型不在允许范围内。"""

    code = "invalid_resolution"


class InvalidResolutionAmountError(EscrowError):
    """部分退款金额缺失、非正数或超过订单总额。"""

    code = "invalid_amount"


class InvalidAmountError(EscrowError):
    """记账金额必须为正整数。"""

    code = "invalid_amount"


class InsufficientFundsError(EscrowError):
    """扣减后余额将为负。"""

    code = "insufficient_funds"


class InvalidBookingStateError(EscrowError):
    """预订当前状态不允许该操作。"""

    code = "invalid_state"


class UnauthorizedError(EscrowError):
    """未登录或令牌无效。"""

    status_code = 401
    code = "unauthorized"


class ForbiddenError(EscrowError):
    """无权限执行该操作。"""

    status_code = 403
    code = "forbidden"


class NotFoundError(EscrowError):
    """申诉、预订或钱包不存在。"""

    status_code = 404
    code = "not_found"


class WalletNotFoundError(NotFoundError):
    """钱包账户不存在。"""
    pass


class AlreadyResolvedError(EscrowError):
    """申诉已被处理（包括并发请求中被其他管理员抢先处理）。"""

    status_code = 409
    code = "already_resolved"


class DuplicateDisputeError(EscrowError):
    """该预订已存在未处理的申诉。"""

    status_code = 409
    code = "duplicate_dispute"


class LedgerInconsistencyError(EscrowError):
    """结算过程中途失败，事务已回滚，需要人工核对账本。"""

    status_code = 500
    code = "ledger_inconsistency"

    def __init__(self, message: str, dispute_id: str | None = None,
                 booking_id: str | None = None, resolution: str | None = None,
                 step: str | None = None):
        super().__init__(message)
        self.dispute_id = dispute_id
        self.booking_id = booking_id
        self.resolution = resolution
        self.step = step


class StorageError(EscrowError):
    """数据库不可用或等待写锁超时，事务未开始或已回滚，可稍后重试。"""

    status_code = 503
    code = "storage_unavailable"
