"""
业务异常：各服务抛出，路由层统一转换为 {"code": -1, "msg": ..., "error": ...}。
"""


class EasyPayError(Exception):
    """业务异常基类，code 为稳定的错误类别标识。"""
    code = "ERROR"


class NotFoundError(EasyPayError):
    """订单、菜单、钱包或身份验证设置不存在。"""
    code = "NOT_FOUND"


class InvalidRequestError(EasyPayError):
    """请求参数不合法（数量、金额为负等）。"""
    code = "INVALID_REQUEST"


class InvalidStateError(EasyPayError):
    """菜单已停售，或订单不处于预期状态。"""
    code = "INVALID_STATE"


class AlreadyProcessedError(InvalidStateError):
    """订单已不是待支付状态，不能重复结算。"""
    code = "ALREADY_PROCESSED"


class AmountMismatchError(EasyPayError):
    """支付金额 + 积分与订单总额不一致。"""
    code = "AMOUNT_MISMATCH"


class InsufficientPointsError(EasyPayError):
    """积分余额不足。"""
    code = "INSUFFICIENT_POINTS"


class GatewayError(EasyPayError):
    """外部支付网关扣款失败或超时，订单保持待支付，可由调用方重试。"""
    code = "GATEWAY_ERROR"


class AuthFailureError(EasyPayError):
    """身份验证失败，result 携带本次验证的 AuthResult（可能为 None）。"""
    code = "AUTH_FAILURE"

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class ConflictError(EasyPayError):
    """订单号冲突，或状态条件更新被并发请求抢先。"""
    code = "CONFLICT"
