# paywall/api/endpoints/facilitator.py
"""
Settlement service HTTP surface: verify and settle x402 payments for other
resource servers (and for this one when X402_FACILITATOR_URL points here).
"""
from typing import Type, TypeVar

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError
import logging

from paywall.core.dependencies import get_local_facilitator
from paywall.x402.errors import MalformedPayload, PaymentError
from paywall.x402.facilitator import Facilitator
from paywall.x402.models import ExactPayload, SettleRequest, VerifyRequest, to_wire

logger = logging.getLogger(__name__)

router = APIRouter()

R = TypeVar("R", VerifyRequest, SettleRequest)


def _parse_request(body: dict, model: Type[R]) -> R:
    if not body.get("paymentPayload") or not body.get("paymentRequirements"):
        raise MalformedPayload("Missing paymentPayload or paymentRequirements")
    try:
        request = model.model_validate(body)
    except ValidationError as e:
        raise MalformedPayload(f"Invalid facilitator request: {e.error_count()} error(s)") from e
    ExactPayload.from_payment(request.payment_payload)
    return request


def _error(e: PaymentError, rejected: dict) -> JSONResponse:
    # Malformed input is a rejection of the payment; anything else is a service error
    content = rejected if e.status_code == 400 else {"success": False, "error": e.reason}
    headers = {"Retry-After": "5"} if e.status_code == 503 else None
    return JSONResponse(status_code=e.status_code, content=content, headers=headers)


@router.post("/verify")
def verify(body: dict = Body(...), facilitator: Facilitator = Depends(get_local_facilitator)):
    """
    Verify a payment without moving funds.

    Returns:
        ``{isValid, invalidReason?, payer?}``; 400 for a malformed request,
        503 if the balance cannot be read.
    """
    try:
        request = _parse_request(body, VerifyRequest)
        result = facilitator.verify(request.payment_payload, request.payment_requirements)
    except PaymentError as e:
        logger.warning(f"x402: facilitator verify failed: {e}")
        return _error(e, {"isValid": False, "invalidReason": e.reason})
    return to_wire(result)


@router.post("/settle")
def settle(body: dict = Body(...), facilitator: Facilitator = Depends(get_local_facilitator)):
    """
    Settle a payment on-chain and wait for a terminal state.

    Returns:
        ``{success, transaction, network, errorReason?, payer?, extra.pendingId?}``;
        ``transaction`` is empty when nothing settled.
    """
    try:
        request = _parse_request(body, SettleRequest)
        result = facilitator.settle(request.payment_payload, request.payment_requirements)
    except PaymentError as e:
        logger.error(f"x402: facilitator settle failed: {e}")
        return _error(e, {"success": False, "errorReason": e.reason})
    return to_wire(result)


@router.get("/supported")
def supported(facilitator: Facilitator = Depends(get_local_facilitator)):
    return to_wire(facilitator.supported())


@router.get("/health")
def health(facilitator: Facilitator = Depends(get_local_facilitator)):
    return facilitator.health()
