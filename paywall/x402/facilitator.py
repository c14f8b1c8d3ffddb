# paywall/x402/facilitator.py
"""
Facilitator: the verify/settle pair the resource gate talks to.

Two interchangeable implementations:
- Facilitator: Verifier + Settler in the same process
- FacilitatorClient: the same contract over HTTP (POST /verify, POST /settle)
  against a separately deployed settlement service, spoken through the x402
  SDK's HTTPFacilitatorClientSync

The gate picks one at startup (X402_FACILITATOR_URL set -> remote).
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx
from x402.http import FacilitatorConfig, HTTPFacilitatorClientSync

from paywall.core.config import settings
from paywall.services.retry import call_with_backoff
from paywall.x402.errors import BackendUnavailable, MalformedPayload
from paywall.x402.models import (
    EXACT_SCHEME,
    X402_VERSION,
    PaymentPayload,
    PaymentRequirements,
    SettleResponse,
    SupportedKind,
    SupportedResponse,
    VerifyResponse,
    failed_settlement,
    payer_of,
)
from paywall.x402.settler import Settler
from paywall.x402.verifier import Verifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNSUPPORTED_SCHEME = "unsupported_scheme"
UNSUPPORTED_NETWORK = "unsupported_network"


class PaymentFacilitator(ABC):
    """Verify without moving funds; settle by moving them."""

    @abstractmethod
    def verify(self, payload: PaymentPayload, requirement: PaymentRequirements) -> VerifyResponse:
        ...

    @abstractmethod
    def settle(self, payload: PaymentPayload, requirement: PaymentRequirements) -> SettleResponse:
        ...


class Facilitator(PaymentFacilitator):
    """
    In-process facilitator.

    Requirements for a scheme or network outside ``supported()`` are refused
    before they reach the Verifier or the Settler.
    """

    def __init__(
        self,
        verifier: Verifier,
        settler: Settler,
        network: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ):
        self.verifier = verifier
        self.settler = settler
        self.network = network or settings.X402_NETWORK
        self.wallet_address = wallet_address or settings.X402_FACILITATOR_ADDRESS

    def unsupported_reason(self, requirement: PaymentRequirements) -> Optional[str]:
        """Why ``requirement`` cannot be handled here, or None if it can."""
        kinds = self.supported().kinds
        if not any(kind.scheme == requirement.scheme for kind in kinds):
            return UNSUPPORTED_SCHEME
        if not any(kind.scheme == requirement.scheme and kind.network == requirement.network for kind in kinds):
            return UNSUPPORTED_NETWORK
        return None

    def verify(self, payload: PaymentPayload, requirement: PaymentRequirements) -> VerifyResponse:
        reason = self.unsupported_reason(requirement)
        if reason:
            logger.info(f"x402: refusing to verify {requirement.scheme} on {requirement.network}: {reason}")
            return VerifyResponse(is_valid=False, invalid_reason=reason, payer=payer_of(payload))
        return self.verifier.verify(payload, requirement)

    def settle(self, payload: PaymentPayload, requirement: PaymentRequirements) -> SettleResponse:
        reason = self.unsupported_reason(requirement)
        if reason:
            logger.warning(f"x402: refusing to settle {requirement.scheme} on {requirement.network}: {reason}")
            return failed_settlement(reason, requirement.network, payer_of(payload))
        return self.settler.settle(payload, requirement)

    def supported(self) -> SupportedResponse:
        """Payment kinds this facilitator can settle."""
        return SupportedResponse(
            kinds=[SupportedKind(x402_version=X402_VERSION, scheme=EXACT_SCHEME, network=self.network)],
            signers={"eip155:*": [self.wallet_address]} if self.wallet_address else {},
        )

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "network": self.network,
            "wallet": self.wallet_address,
        }


def _check_status(response: httpx.Response) -> None:
    """Map non-200 facilitator answers onto payment errors before the SDK parses them."""
    if response.status_code == 200:
        return
    response.read()
    if response.status_code >= 500:
        raise BackendUnavailable(f"Facilitator responded with {response.status_code}: {response.text}")
    if response.status_code >= 400:
        try:
            data = response.json()
        except ValueError as e:
            raise BackendUnavailable(f"Facilitator returned invalid JSON: {response.text}") from e
        raise MalformedPayload(
            f"Facilitator rejected request with {response.status_code}: {response.text}",
            reason=data.get("invalidReason") or data.get("errorReason"),
        )


class FacilitatorClient(PaymentFacilitator):
    """
    HTTP client for a remote facilitator.

    Only transport failures are retried. A settle request that reached the
    facilitator is never resent: the facilitator polls until a terminal state,
    so a lost response means the outcome is unknown, not that it failed.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 120.0,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ):
        url = base_url or settings.X402_FACILITATOR_URL
        if not url:
            raise ValueError("Facilitator URL is required (X402_FACILITATOR_URL)")
        self.base_url = url.rstrip("/")
        self.http_client = http_client or httpx.Client(timeout=timeout, follow_redirects=True)
        self.http_client.event_hooks["response"].append(_check_status)
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.X402_BACKEND_RETRY_ATTEMPTS
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.X402_BACKEND_RETRY_BASE_DELAY
        self._client = HTTPFacilitatorClientSync(
            FacilitatorConfig(url=self.base_url, timeout=timeout, http_client=self.http_client)
        )

    def _call(self, path: str, func: Callable[[], T]) -> T:
        url = f"{self.base_url}{path}"
        logger.info(f"x402: submitting payment to facilitator {url}")
        try:
            return call_with_backoff(
                func,
                attempts=self.retry_attempts if path == "/verify" else 1,
                base_delay=self.retry_base_delay,
                retry_on=(httpx.TransportError,),
                description=f"facilitator POST {path}",
            )
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"Facilitator {url} unreachable: {e}") from e
        except ValueError as e:
            # FacilitatorResponseError and unexpected status codes from the SDK
            raise BackendUnavailable(f"Unexpected answer from facilitator {url}: {e}") from e

    def verify(self, payload: PaymentPayload, requirement: PaymentRequirements) -> VerifyResponse:
        return self._call("/verify", lambda: self._client.verify(payload, requirement))

    def settle(self, payload: PaymentPayload, requirement: PaymentRequirements) -> SettleResponse:
        return self._call("/settle", lambda: self._client.settle(payload, requirement))
