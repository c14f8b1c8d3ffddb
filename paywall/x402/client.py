# paywall/x402/client.py
"""
Paying side of the x402 protocol.

PaywallClient fetches a URL and, when the server answers 402, signs an
EIP-3009 authorization for the first accepted payment method and retries
with the ``payment-signature`` header.

Example:
    signer = LocalAccountSigner(private_key)
    client = PaywallClient(signer, signer.address)
    result = client.pay_for("http://localhost:8000/api/premium", max_price="$0.05")
    print(result.content, result.transaction)
"""
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests
from requests.exceptions import RequestException

from paywall.services.custody import TypedDataSigner
from paywall.x402.codec import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    build_typed_data,
    chain_id_from_network,
    decode_payment_required,
    decode_payment_response,
    encode_payment_payload,
)
from paywall.x402.errors import MalformedPayload
from paywall.x402.models import (
    Authorization,
    ExactPayload,
    PaymentPayload,
    PaymentRequired,
    PaymentRequirements,
    SettleResponse,
    to_wire,
)
from paywall.x402.pricing import PriceSpec, format_amount, get_asset, parse_price, resolve_amount

logger = logging.getLogger(__name__)

# Tolerance for clock drift between payer and facilitator
DEFAULT_CLOCK_SKEW_SECONDS = 5


class PaymentRefused(Exception):
    """The client declined to pay (price above the caller's limit)."""


class PaymentFailed(Exception):
    """The server did not release the resource after payment was sent."""

    def __init__(self, message: str, status_code: int, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass
class PaidContent:
    """Result of ``pay_for``."""
    status_code: int
    content: Any
    paid: bool
    amount: int = 0
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None


def _body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class PaywallClient:
    """
    HTTP client that pays x402 challenges.

    Args:
        signer: Signs the TransferWithAuthorization typed data
        address: Payer address (the authorization's ``from``)
        account_id: Signer-side account id; defaults to ``address``
        session: requests session
        clock: Returns the current unix time
        clock_skew_seconds: validAfter is set this far in the past
    """

    def __init__(
        self,
        signer: TypedDataSigner,
        address: str,
        account_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 120.0,
        clock: Callable[[], float] = time.time,
        clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
    ):
        self.signer = signer
        self.address = address
        self.account_id = account_id or address
        self.session = session or requests.Session()
        self.timeout = timeout
        self._clock = clock
        self.clock_skew_seconds = clock_skew_seconds

    def _challenge(self, response: requests.Response) -> PaymentRequired:
        header = response.headers.get(PAYMENT_REQUIRED_HEADER)
        if header:
            return decode_payment_required(header)
        try:
            challenge = PaymentRequired.model_validate(response.json())
        except ValueError as e:
            raise MalformedPayload(f"402 response carries no usable payment requirements: {e}") from e
        if not challenge.accepts:
            raise MalformedPayload("402 response offers no payment requirements")
        return challenge

    def build_payment(
        self,
        challenge: PaymentRequired,
        requirement: PaymentRequirements,
        amount: int,
    ) -> PaymentPayload:
        """Sign an authorization paying ``amount`` for ``requirement``."""
        valid_after = int(self._clock()) - self.clock_skew_seconds
        authorization = Authorization(
            from_=self.address,
            to=requirement.pay_to,
            value=str(amount),
            valid_after=str(valid_after),
            valid_before=str(valid_after + requirement.max_timeout_seconds),
            nonce="0x" + os.urandom(32).hex(),
        )
        extra = requirement.extra or {}
        typed_data = build_typed_data(
            authorization,
            token_name=extra.get("name", ""),
            token_version=extra.get("version", ""),
            chain_id=chain_id_from_network(requirement.network),
            verifying_contract=requirement.asset,
        )
        signature = self.signer.sign_typed_data(self.account_id, typed_data)
        return PaymentPayload(
            resource=challenge.resource,
            accepted=requirement,
            payload=ExactPayload(signature=signature, authorization=authorization).to_payload(),
        )

    def pay_for(self, url: str, max_price: Optional[PriceSpec] = None) -> PaidContent:
        """
        Fetch ``url``, paying the x402 challenge if there is one.

        Args:
            url: Resource URL
            max_price: Refuse to pay more than this ("$0.05" or smallest units)

        Returns:
            PaidContent with the response body and settlement details

        Raises:
            PaymentRefused: If the price exceeds ``max_price``
            PaymentFailed: If the paid request is not answered with 2xx
            MalformedPayload: If the 402 challenge cannot be decoded
        """
        try:
            response = self.session.get(url, timeout=self.timeout)
        except RequestException as e:
            raise PaymentFailed(f"Request to {url} failed: {e}", status_code=0) from e

        if response.status_code != 402:
            return PaidContent(status_code=response.status_code, content=_body(response), paid=False)

        challenge = self._challenge(response)
        requirement = challenge.accepts[0]
        decimals = get_asset(requirement.network).decimals
        amount = resolve_amount(to_wire(requirement), decimals)

        if max_price is not None and amount > parse_price(max_price, decimals):
            raise PaymentRefused(f"Price {format_amount(amount, decimals)} exceeds limit {max_price} for {url}")

        payment = self.build_payment(challenge, requirement, amount)
        logger.info(f"x402: paying {amount} units to {requirement.pay_to} for {url}")

        try:
            paid = self.session.get(
                url,
                headers={PAYMENT_SIGNATURE_HEADER: encode_payment_payload(payment)},
                timeout=self.timeout,
            )
        except RequestException as e:
            raise PaymentFailed(f"Paid request to {url} failed: {e}", status_code=0) from e

        if not 200 <= paid.status_code < 300:
            body = _body(paid)
            raise PaymentFailed(f"Payment for {url} not accepted ({paid.status_code}): {body}", paid.status_code, body)

        settlement: Optional[SettleResponse] = None
        header = paid.headers.get(PAYMENT_RESPONSE_HEADER)
        if header:
            settlement = decode_payment_response(header)

        transaction = settlement.transaction if settlement else None
        logger.info(f"x402: paid for {url}, transaction {transaction}")
        return PaidContent(
            status_code=paid.status_code,
            content=_body(paid),
            paid=True,
            amount=amount,
            transaction=transaction,
            network=settlement.network if settlement else requirement.network,
            payer=(settlement.payer if settlement else None) or self.address,
        )
