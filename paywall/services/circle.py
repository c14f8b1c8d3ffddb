# paywall/services/circle.py
"""
Circle Developer-Controlled Wallets client.

Implements the custodial signer interfaces on top of Circle's W3S REST API:
typed-data signing, contract execution (used to submit
``transferWithAuthorization``), transaction polling and wallet lookups.

Every mutating call carries an ``entitySecretCiphertext``: the entity secret
RSA-OAEP encrypted with the entity public key, freshly generated per request.
"""
import base64
import logging
from typing import Any, Dict, Optional

import requests
from requests.exceptions import RequestException
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from paywall.core.config import settings
from paywall.services.custody import (
    CustodialSigner,
    SignerRejected,
    TransferStatus,
    WalletInfo,
)
from paywall.services.retry import call_with_backoff
from paywall.x402.codec import split_signature, typed_data_to_json
from paywall.x402.errors import BackendUnavailable, ConfigurationError

logger = logging.getLogger(__name__)

TRANSFER_WITH_AUTHORIZATION_SIGNATURE = (
    "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
)


class _RetryableHttpError(Exception):
    """5xx / 429 from Circle; retried, then reported as BackendUnavailable."""


class CircleWalletClient(CustodialSigner):
    """Synchronous client for the Circle W3S API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        entity_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        fee_level: str = "MEDIUM",
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ):
        self._api_key = api_key or settings.CIRCLE_API_KEY
        self._entity_secret = entity_secret or settings.CIRCLE_ENTITY_SECRET
        if not self._api_key or not self._entity_secret:
            raise ConfigurationError("CIRCLE_API_KEY and CIRCLE_ENTITY_SECRET are required")

        self.base_url = (base_url or settings.CIRCLE_API_URL).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.fee_level = fee_level
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.X402_BACKEND_RETRY_ATTEMPTS
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.X402_BACKEND_RETRY_BASE_DELAY
        self._public_key = None

    # ------------------------------------------------------------------
    # Low-level HTTP
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _send(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        response = self.session.request(
            method,
            f"{self.base_url}{path}",
            json=body,
            headers=self._headers(),
            timeout=self.timeout,
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise _RetryableHttpError(f"Circle responded with {response.status_code}: {response.text}")
        if response.status_code >= 400:
            raise SignerRejected(
                f"Circle responded with {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json()

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send a request, retrying transport failures and 5xx answers.

        ``body`` must be fully built before the call: retries resend the same
        payload, which keeps idempotency keys stable across attempts.
        """
        try:
            return call_with_backoff(
                lambda: self._send(method, path, body),
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                retry_on=(RequestException, _RetryableHttpError),
                description=f"Circle {method} {path}",
            )
        except (RequestException, _RetryableHttpError, ValueError) as e:
            raise BackendUnavailable(f"Circle {method} {path} failed: {e}") from e

    # ------------------------------------------------------------------
    # Entity secret
    # ------------------------------------------------------------------

    def _entity_public_key(self):
        if self._public_key is None:
            result = self._request("GET", "/v1/w3s/config/entity/publicKey")
            pem = result.get("data", {}).get("publicKey")
            if not pem:
                raise BackendUnavailable("Circle did not return an entity public key")
            self._public_key = serialization.load_pem_public_key(pem.encode("utf-8"))
        return self._public_key

    def _entity_secret_ciphertext(self) -> str:
        ciphertext = self._entity_public_key().encrypt(
            bytes.fromhex(self._entity_secret),
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=None,
            ),
        )
        return base64.b64encode(ciphertext).decode("ascii")

    # ------------------------------------------------------------------
    # TypedDataSigner
    # ------------------------------------------------------------------

    def sign_typed_data(self, account_id: str, typed_data: Dict[str, Any]) -> str:
        body = {
            "walletId": account_id,
            "data": typed_data_to_json(typed_data),
            "entitySecretCiphertext": self._entity_secret_ciphertext(),
        }
        result = self._request("POST", "/v1/w3s/developer/sign/typedData", body)
        signature = result.get("data", {}).get("signature")
        if not signature:
            raise BackendUnavailable("Circle signTypedData returned no signature")
        return signature

    # ------------------------------------------------------------------
    # TransferExecutor
    # ------------------------------------------------------------------

    def execute_transfer(
        self,
        account_id: str,
        asset: str,
        to: str,
        value: int,
        authorization: Dict[str, Any],
        signature: str,
        idempotency_key: str,
    ) -> str:
        v, r, s = split_signature(signature)
        body = {
            "idempotencyKey": idempotency_key,
            "walletId": account_id,
            "contractAddress": asset,
            "abiFunctionSignature": TRANSFER_WITH_AUTHORIZATION_SIGNATURE,
            "abiParameters": [
                authorization["from"],
                to,
                str(value),
                str(authorization["validAfter"]),
                str(authorization["validBefore"]),
                authorization["nonce"],
                v,
                r,
                s,
            ],
            "feeLevel": self.fee_level,
            "entitySecretCiphertext": self._entity_secret_ciphertext(),
        }
        result = self._request("POST", "/v1/w3s/developer/transactions/contractExecution", body)
        pending_id = result.get("data", {}).get("id")
        if not pending_id:
            raise BackendUnavailable("Circle contractExecution returned no transaction id")

        logger.info(f"Circle transaction submitted: {pending_id} (state={result['data'].get('state')})")
        return pending_id

    def poll_status(self, pending_id: str) -> TransferStatus:
        result = self._request("GET", f"/v1/w3s/transactions/{pending_id}")
        tx = result.get("data", {}).get("transaction")
        if not tx:
            raise BackendUnavailable(f"Circle transaction {pending_id} not found")
        return TransferStatus(
            state=tx.get("state", "UNKNOWN"),
            tx_hash=tx.get("txHash") or None,
            error_reason=tx.get("errorReason") or tx.get("errorDetails") or None,
        )

    # ------------------------------------------------------------------
    # WalletDirectory
    # ------------------------------------------------------------------

    def get_wallet(self, wallet_id: str) -> WalletInfo:
        result = self._request("GET", f"/v1/w3s/wallets/{wallet_id}")
        wallet = result.get("data", {}).get("wallet")
        if not wallet or not wallet.get("address"):
            raise ConfigurationError(f"Circle wallet {wallet_id} has no address")
        return WalletInfo(id=wallet["id"], address=wallet["address"])

    def get_token_balance(self, wallet_id: str, symbol: str = "USDC") -> str:
        result = self._request("GET", f"/v1/w3s/wallets/{wallet_id}/balances")
        # Token symbol can be 'USDC' or 'USDC-TESTNET' depending on network
        for balance in result.get("data", {}).get("tokenBalances", []):
            token = balance.get("token") or {}
            if symbol in (token.get("symbol") or ""):
                return balance.get("amount", "0")
        return "0"
