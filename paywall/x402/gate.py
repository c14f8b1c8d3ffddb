# paywall/x402/gate.py
"""
Resource gate: the x402 challenge/response state machine.

The gate is independent of any web framework. The HTTP binding
(paywall/x402/middleware.py) converts a request into a GateRequest, calls
``admit`` and, when the payment settled, runs the protected handler and adds
the headers returned by ``fulfill``. A settled payment is recorded in the
ledger by ``admit`` itself, so a failing handler cannot lose it.

States of one request:

    NO_PAYMENT_SEEN --no header--> CHALLENGE_ISSUED (402)
    NO_PAYMENT_SEEN --header-----> PAYLOAD_RECEIVED
    PAYLOAD_RECEIVED --undecodable / not offered--> REJECTED (400)
    PAYLOAD_RECEIVED --verify invalid------------> REJECTED (402)
    PAYLOAD_RECEIVED --verify valid--------------> VERIFIED
    VERIFIED --settle failed--> SETTLE_FAILED (402)
    VERIFIED --settled--------> SETTLED
    SETTLED --handler ran-----> FULFILLED

Verification always precedes settlement, and the handler only runs after a
successful settlement.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union
from urllib.parse import urlparse

from paywall.x402 import audit
from paywall.x402.codec import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    decode_payment_payload,
    encode_payment_required,
    encode_payment_response,
)
from paywall.x402.errors import (
    BackendUnavailable,
    ConfigurationError,
    MalformedPayload,
    RequirementMismatch,
    SettlementInvariantError,
)
from paywall.x402.facilitator import PaymentFacilitator
from paywall.x402.ledger import PaymentLedger
from paywall.x402.models import (
    X402_VERSION,
    Payment,
    PaymentPayload,
    PaymentRequired,
    PaymentRequirements,
    ResourceInfo,
    SettleResponse,
    amount_of,
    outcome_unknown,
    payer_of,
    pending_id_of,
    requirements_match,
    to_wire,
)
from paywall.x402.pricing import PaymentRequirementsRegistry, PriceSpec
from paywall.x402.wallet_cache import WalletCache

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = "5"


class GateState(str, Enum):
    NO_PAYMENT_SEEN = "no_payment_seen"
    CHALLENGE_ISSUED = "challenge_issued"
    PAYLOAD_RECEIVED = "payload_received"
    VERIFIED = "verified"
    SETTLED = "settled"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"
    SETTLE_FAILED = "settle_failed"


@dataclass(frozen=True)
class ProtectedResource:
    """A priced resource. ``resource_id`` is what the ledger records."""
    resource_id: str
    price: PriceSpec
    description: str = ""
    mime_type: str = "application/json"


@dataclass
class GateRequest:
    """The parts of an HTTP request the gate looks at."""
    method: str
    url: str
    resource: ProtectedResource
    headers: Mapping[str, str] = field(default_factory=dict)
    client_ip: str = "unknown"

    @property
    def path(self) -> str:
        return urlparse(self.url).path

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class GateResponse:
    """A framework-neutral response."""
    status_code: int
    body: Union[Dict[str, Any], Any]
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class GateDecision:
    """
    Outcome of ``admit``.

    ``admitted`` is True only in state SETTLED; every other decision carries
    the response to send instead of running the handler.
    """
    state: GateState
    request: GateRequest
    request_id: str
    response: Optional[GateResponse] = None
    payload: Optional[PaymentPayload] = None
    requirement: Optional[PaymentRequirements] = None
    settlement: Optional[SettleResponse] = None

    @property
    def admitted(self) -> bool:
        return self.state == GateState.SETTLED

    @property
    def payer(self) -> Optional[str]:
        return payer_of(self.payload) if self.payload is not None else None


def _error_response(status_code: int, **fields: Any) -> GateResponse:
    return GateResponse(status_code=status_code, body={"success": False, **fields})


class ResourceGate:
    """
    Runs the x402 handshake for one request at a time.

    The gate itself holds no per-request state; the ledger and the wallet
    cache it is given are shared and safe for concurrent use.
    """

    def __init__(
        self,
        registry: PaymentRequirementsRegistry,
        facilitator: PaymentFacilitator,
        ledger: PaymentLedger,
        wallet_cache: Optional[WalletCache] = None,
    ):
        self.registry = registry
        self.facilitator = facilitator
        self.ledger = ledger
        self.wallet_cache = wallet_cache

    # ------------------------------------------------------------------
    # Challenge
    # ------------------------------------------------------------------

    def payment_required(self, request: GateRequest, error: Optional[str] = None) -> PaymentRequired:
        """Build the challenge for ``request`` from current configuration."""
        resource = request.resource
        return PaymentRequired(
            x402_version=X402_VERSION,
            error=error,
            resource=ResourceInfo(
                url=request.url,
                description=resource.description,
                mime_type=resource.mime_type,
            ),
            accepts=self.registry.requirements_for(resource.resource_id, resource.price),
        )

    def _challenge(self, request: GateRequest, request_id: str) -> GateDecision:
        challenge = self.payment_required(request, error=f"{PAYMENT_SIGNATURE_HEADER} header is required")
        default = challenge.accepts[0]
        logger.info(
            f"x402: no payment for {request.path}, returning 402 "
            f"({default.amount} units of {default.asset} to {default.pay_to})"
        )
        audit.log_payment_required_sent(
            client_ip=request.client_ip,
            resource=request.resource.resource_id,
            amount=default.amount,
            network=default.network,
            pay_to=default.pay_to,
            request_id=request_id,
        )
        return GateDecision(
            state=GateState.CHALLENGE_ISSUED,
            request=request,
            request_id=request_id,
            response=GateResponse(
                status_code=402,
                body=to_wire(challenge),
                headers={PAYMENT_REQUIRED_HEADER: encode_payment_required(challenge)},
            ),
        )

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind_requirement(self, request: GateRequest, payload: PaymentPayload) -> PaymentRequirements:
        """
        Find the offered requirement the payload claims to pay.

        The payload's ``accepted`` block must equal one of the requirements the
        gate offers right now, and its resource must be the requested path.
        The server-side copy is returned so that nothing the client sent is
        trusted for verification.

        Raises:
            RequirementMismatch: If no offer matches or the resource differs.
        """
        if payload.x402_version != X402_VERSION:
            raise RequirementMismatch(f"Unsupported x402Version {payload.x402_version}")

        if payload.resource is None:
            raise RequirementMismatch("Payment does not name the resource it pays for")
        if urlparse(payload.resource.url).path.rstrip("/") != request.path.rstrip("/"):
            raise RequirementMismatch(
                f"Payment is for {payload.resource.url}, not {request.path}"
            )

        offers = self.registry.requirements_for(request.resource.resource_id, request.resource.price)
        for offer in offers:
            if requirements_match(offer, payload.accepted):
                return offer
        raise RequirementMismatch(
            f"Accepted requirement ({payload.accepted.amount} of {payload.accepted.asset} "
            f"to {payload.accepted.pay_to}) was not offered for {request.path}"
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(self, request: GateRequest) -> GateDecision:
        """
        Run the handshake up to settlement.

        Blocks while the settlement is polled; call it from a worker thread
        in async servers.

        Returns:
            GateDecision in state SETTLED (run the handler, then ``fulfill``)
            or a terminal state carrying the response to send.
        """
        request_id = audit.generate_request_id()
        audit.log_request_received(request.client_ip, request.method, request.path, request_id=request_id)
        decision = GateDecision(state=GateState.NO_PAYMENT_SEEN, request=request, request_id=request_id)

        try:
            header = request.header(PAYMENT_SIGNATURE_HEADER)
            if not header:
                return self._challenge(request, request_id)

            decision.state = GateState.PAYLOAD_RECEIVED
            decision.payload = decode_payment_payload(header)
            decision.requirement = self.bind_requirement(request, decision.payload)
            audit.log_payment_received(
                client_ip=request.client_ip,
                payer=decision.payer,
                resource=request.resource.resource_id,
                amount=decision.requirement.amount,
                network=decision.requirement.network,
                request_id=request_id,
            )

            verification = self.facilitator.verify(decision.payload, decision.requirement)
            if not verification.is_valid:
                return self._reject_invalid(decision, verification.invalid_reason)
            decision.state = GateState.VERIFIED
            audit.log_payment_verified(request.client_ip, decision.payer, request_id=request_id)

            settlement = self.facilitator.settle(decision.payload, decision.requirement)
            decision.settlement = settlement
            if not settlement.success:
                return self._settle_failed(decision, settlement)

            decision.state = GateState.SETTLED
            self._record_settlement(decision)
            return decision

        except MalformedPayload as e:
            logger.warning(f"x402: rejected payment from {request.client_ip} for {request.path}: {e}")
            audit.log_payment_rejected(
                request.client_ip, e.reason, decision.state.value, payer=decision.payer, request_id=request_id
            )
            decision.state = GateState.REJECTED
            decision.response = _error_response(e.status_code, invalidReason=e.reason)
            return decision

        except ConfigurationError as e:
            logger.error(f"x402: payment configuration error for {request.path}: {e}")
            audit.log_error(request.client_ip, "configuration_error", str(e), request_id=request_id)
            decision.state = GateState.REJECTED
            decision.response = _error_response(e.status_code, error=e.reason)
            return decision

        except SettlementInvariantError as e:
            logger.error(f"x402: settlement invariant violated for {request.path}: {e}")
            audit.log_error(
                request.client_ip, "settlement_invariant", str(e), payer=decision.payer, request_id=request_id
            )
            decision.state = GateState.SETTLE_FAILED
            decision.response = _error_response(e.status_code, errorReason=e.reason)
            return decision

        except BackendUnavailable as e:
            logger.error(f"x402: backend unavailable while processing {request.path}: {e}")
            audit.log_error(
                request.client_ip, "backend_unavailable", str(e), payer=decision.payer, request_id=request_id
            )
            decision.state = GateState.REJECTED
            decision.response = _error_response(e.status_code, error=e.reason)
            decision.response.headers["Retry-After"] = RETRY_AFTER_SECONDS
            return decision

    def _reject_invalid(self, decision: GateDecision, reason: Optional[str]) -> GateDecision:
        request = decision.request
        reason = reason or "invalid_payment"
        audit.log_payment_rejected(
            request.client_ip, reason, "verify", payer=decision.payer, request_id=decision.request_id
        )
        challenge = self.payment_required(request, error=reason)
        decision.state = GateState.REJECTED
        decision.response = GateResponse(
            status_code=402,
            body={"success": False, "invalidReason": reason},
            headers={PAYMENT_REQUIRED_HEADER: encode_payment_required(challenge)},
        )
        return decision

    def _settle_failed(self, decision: GateDecision, settlement: SettleResponse) -> GateDecision:
        request = decision.request
        reason = settlement.error_reason or "settlement_failed"
        if outcome_unknown(settlement):
            self.ledger.flag_unresolved(
                resource_id=request.resource.resource_id,
                payer=decision.payer,
                pending_id=pending_id_of(settlement),
                reason=reason,
            )
            audit.log_settlement_unresolved(
                request.client_ip,
                decision.payer,
                pending_id_of(settlement),
                request.resource.resource_id,
                reason,
                request_id=decision.request_id,
            )
        else:
            audit.log_settlement_failed(
                request.client_ip, decision.payer, reason, settlement.network, request_id=decision.request_id
            )
        logger.warning(f"x402: settlement failed for {decision.payer} on {request.path}: {reason}")
        decision.state = GateState.SETTLE_FAILED
        decision.response = _error_response(402, errorReason=reason)
        return decision

    def _record_settlement(self, decision: GateDecision) -> None:
        # Funds have moved: record before the handler gets a chance to fail.
        request = decision.request
        settlement = decision.settlement
        self.ledger.record_accepted(
            Payment(
                resource_id=request.resource.resource_id,
                amount=amount_of(decision.requirement),
                tx_hash=settlement.transaction,
                payer=decision.payer,
            )
        )
        if self.wallet_cache is not None:
            self.wallet_cache.mark_stale()

        audit.log_payment_settled(
            client_ip=request.client_ip,
            payer=decision.payer,
            transaction_hash=settlement.transaction,
            network=settlement.network,
            resource=request.resource.resource_id,
            amount=decision.requirement.amount,
            request_id=decision.request_id,
        )

    # ------------------------------------------------------------------
    # Fulfilment
    # ------------------------------------------------------------------

    def fulfill(self, decision: GateDecision) -> Dict[str, str]:
        """
        Return the headers proving payment for a settled decision.

        Call once per admitted decision, after the handler ran. The payment
        itself was already recorded by ``admit``.
        """
        if not decision.admitted:
            raise ValueError(f"Cannot fulfill a decision in state {decision.state.value}")

        request = decision.request
        settlement = decision.settlement
        decision.state = GateState.FULFILLED
        logger.info(f"x402: {request.path} fulfilled for {decision.payer} (tx {settlement.transaction})")
        return {PAYMENT_RESPONSE_HEADER: encode_payment_response(settlement)}

    def handle(self, request: GateRequest, handler: Callable[[GateDecision], GateResponse]) -> GateResponse:
        """Admit, run ``handler`` on success, and attach the settlement headers."""
        decision = self.admit(request)
        if not decision.admitted:
            return decision.response

        response = handler(decision)
        response.headers.update(self.fulfill(decision))
        return response

