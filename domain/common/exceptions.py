"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class OrderNotFoundException(BusinessException):
    """订单不存在，或不属于当前用户（不向非所有者暴露订单是否存在）"""

    def __init__(self, order_id: Optional[str] = None):
        details = {"order_id": order_id} if order_id else None
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details=details,
        )


class InvalidOrderStateException(BusinessException):
    """订单当前状态不允许请求的状态转换"""

    def __init__(self, order_id: Optional[str], current: str, target: str, message: Optional[str] = None):
        super().__init__(
            code=BusinessCode.ORDER_INVALID_STATE,
            message=message or f"Order cannot move from {current} to {target}",
            error_type="InvalidOrderState",
            details={"order_id": order_id, "current": current, "target": target},
            field="status",
        )


# ---- 支付网关异常（M-Pesa） ----

class PaymentGatewayError(BusinessException):
    """支付网关异常基类"""

    def __init__(
        self,
        message: str,
        *,
        code: int = PaymentCode.PROVIDER_ERROR,
        error_type: str = "PaymentGatewayError",
        provider: str = "mpesa",
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(code=code, message=message, error_type=error_type, details=full_details)


class PaymentConfigError(PaymentGatewayError):
    """必需配置缺失/无效，启动时即失败"""

    def __init__(self, message: str, *, missing: Optional[list[str]] = None):
        super().__init__(
            message,
            code=PaymentCode.CONFIG_ERROR,
            error_type="PaymentConfigError",
            details={"missing": missing} if missing else None,
        )


class PaymentCredentialError(PaymentGatewayError):
    """支付渠道拒绝了 consumer key/secret"""

    def __init__(self, message: str = "M-Pesa rejected the configured credentials", *, status_code: Optional[int] = None):
        super().__init__(
            message,
            code=PaymentCode.CREDENTIAL_ERROR,
            error_type="PaymentCredentialError",
            details={"status_code": status_code} if status_code else None,
        )


class PaymentNetworkError(PaymentGatewayError):
    """支付渠道无响应（可重试）"""

    def __init__(self, message: str = "No response from M-Pesa", *, operation: Optional[str] = None):
        super().__init__(
            message,
            code=PaymentCode.NETWORK_ERROR,
            error_type="PaymentNetworkError",
            details={"operation": operation, "retryable": True},
        )


class PaymentProviderError(PaymentGatewayError):
    """支付渠道返回了失败响应"""

    def __init__(
        self,
        message: str,
        *,
        provider_code: Optional[str] = None,
        status_code: Optional[int] = None,
        code: int = PaymentCode.PROVIDER_ERROR,
        error_type: str = "PaymentProviderError",
    ):
        super().__init__(
            message,
            code=code,
            error_type=error_type,
            details={"provider_code": provider_code, "status_code": status_code},
        )
        self.provider_code = provider_code


class PaymentDeclinedError(PaymentProviderError):
    """交易已有终态结果且为失败（如余额不足、用户取消）"""

    def __init__(self, message: str, *, result_code: Optional[str] = None):
        super().__init__(
            message,
            provider_code=result_code,
            code=PaymentCode.DECLINED,
            error_type="PaymentDeclined",
        )


class PaymentTimeoutError(BusinessException):
    """轮询次数耗尽仍无终态结果；支付可能稍后通过回调完成"""

    def __init__(self, checkout_request_id: str, attempts: int):
        super().__init__(
            code=PaymentCode.TIMEOUT,
            message="Payment confirmation timed out. Please check your order history.",
            error_type="PaymentTimeout",
            details={"checkout_request_id": checkout_request_id, "attempts": attempts},
        )
