"""
API依赖项 - 认证和服务装配
"""
from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from application.ports.payment_gateway import MpesaGateway
from application.services.order_service import OrderApplicationService
from application.services.payment_service import PaymentApplicationService
from core.config import settings
from core.exceptions import TokenExpiredException, UnauthorizedException
from domain.common.exceptions import PaymentConfigError
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

# HTTP Bearer for direct API calls
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token issued by the storefront auth service",
    auto_error=False,
)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = "customer"
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_access_token(token: str) -> CurrentUser:
    """校验JWT并返回调用者身份（用户ID取 sub，兼容旧令牌的 id 字段）"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredException()
    except jwt.PyJWTError:
        raise UnauthorizedException("Invalid authentication credentials")

    user_id = payload.get("sub") or payload.get("id")
    if not user_id:
        raise UnauthorizedException("Invalid authentication credentials")
    return CurrentUser(id=str(user_id), role=str(payload.get("role") or "customer"), email=payload.get("email"))


async def get_token(
    bearer_token: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> str:
    """从Bearer token中提取token"""
    if bearer_token and bearer_token.credentials:
        return bearer_token.credentials
    raise UnauthorizedException("Authentication credentials were not provided")


async def get_current_user(token: str = Depends(get_token)) -> CurrentUser:
    """获取当前登录用户"""
    return decode_access_token(token)


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return SQLAlchemyUnitOfWork


def get_payment_gateway(request: Request) -> MpesaGateway:
    """进程级网关实例，由 main.py lifespan 创建"""
    gateway = getattr(request.app.state, "mpesa_gateway", None)
    if gateway is None:
        raise PaymentConfigError("M-Pesa gateway is not configured")
    return gateway


async def get_payment_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    gateway: MpesaGateway = Depends(get_payment_gateway),
) -> PaymentApplicationService:
    return PaymentApplicationService(uow_factory=uow_factory, gateway=gateway)


async def get_callback_service(
    request: Request,
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
) -> PaymentApplicationService:
    # 回调处理不调用网关，网关缺失时也必须能确认回调
    gateway = getattr(request.app.state, "mpesa_gateway", None)
    return PaymentApplicationService(uow_factory=uow_factory, gateway=gateway)


async def get_order_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
) -> OrderApplicationService:
    return OrderApplicationService(uow_factory=uow_factory)
