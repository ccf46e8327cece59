"""
M-Pesa payments API routes.

Keep this thin: no provider details here. The callback route is called by
the provider without user credentials and always answers HTTP 200 with the
acknowledgement shape the provider expects.
"""
from __future__ import annotations

import ipaddress
import json
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import (
    CurrentUser,
    get_callback_service,
    get_current_user,
    get_payment_service,
)
from api.middleware.request_id import resolve_client_ip
from application.dtos.payments import QueryResponse, StkPushRequest
from application.services.payment_service import PaymentApplicationService
from core.logging_config import get_logger
from core.settings import payment_settings
from shared.codes.payment_codes import MPESA_CALLBACK_ACCEPTED, MPESA_CALLBACK_FAILED


router = APIRouter(prefix="/payments/mpesa", tags=["Payments"])
logger = get_logger(__name__)


def is_ip_allowed(remote_ip: str, allowlist: list[str]) -> bool:
    """IP 或 CIDR 白名单匹配；格式错误的条目忽略"""
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            continue
    return False


@router.post("/stk-push", summary="Initiate STK push for an order")
async def initiate_stk_push(
    payload: StkPushRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.initiate_stk_push(payload, user_id=current_user.id)
    return result.model_dump(by_alias=True)


@router.post("/callback", summary="M-Pesa STK callback (provider only)")
async def mpesa_callback(
    request: Request,
    token: Optional[str] = Query(default=None),
    service: PaymentApplicationService = Depends(get_callback_service),
):
    webhook = payment_settings.webhook

    # Optional shared secret carried in the callback URL
    if webhook.callback_token and not (
        token and secrets.compare_digest(token, webhook.callback_token)
    ):
        logger.warning("mpesa_callback_token_rejected")
        return dict(MPESA_CALLBACK_ACCEPTED)

    # Optional IP allowlist
    if webhook.ip_allowlist:
        remote_ip = resolve_client_ip(request)
        if not is_ip_allowed(remote_ip, webhook.ip_allowlist):
            logger.warning("mpesa_callback_ip_rejected", remote_ip=remote_ip)
            return dict(MPESA_CALLBACK_ACCEPTED)

    try:
        payload = json.loads(await request.body() or b"null")
    except ValueError:
        logger.error("mpesa_callback_invalid_json")
        return dict(MPESA_CALLBACK_FAILED)

    return await service.handle_callback(payload)


@router.get("/query/{checkout_request_id}", summary="Query STK transaction status")
async def query_transaction(
    checkout_request_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.query_status(checkout_request_id)
    return QueryResponse(result=result.raw).model_dump()
