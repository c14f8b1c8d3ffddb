# paywall/services/chain.py
"""
Read-only JSON-RPC access to the execution backend.

Only two reads are needed by the payment core: the ERC-20 balance of a
payer (verify-time funding check) and account bytecode (capability check
for contract wallets).
"""
import logging
from typing import Any, List, Optional

import requests
from requests.exceptions import RequestException
from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from paywall.core.config import settings
from paywall.services.custody import ChainReader
from paywall.services.retry import call_with_backoff
from paywall.x402.errors import BackendUnavailable

logger = logging.getLogger(__name__)

BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")


class RpcError(Exception):
    """The node answered with a JSON-RPC error object."""


class JsonRpcChainReader(ChainReader):
    """
    ChainReader backed by a plain JSON-RPC endpoint.

    Transport failures are retried with backoff; once the retry budget is
    spent, or when the node returns an error object, BackendUnavailable is
    raised so callers never confuse an outage with a bad payment.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
    ):
        self.rpc_url = rpc_url or settings.RPC_URL
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.X402_BACKEND_RETRY_ATTEMPTS
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.X402_BACKEND_RETRY_BASE_DELAY
        self._request_id = 0

    def _post(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        response = self.session.post(
            self.rpc_url,
            json={
                "jsonrpc": "2.0",
                "method": method,
                "params": params,
                "id": self._request_id,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()

        result = response.json()
        if "error" in result:
            raise RpcError(f"RPC error: {result['error']}")
        if "result" not in result:
            raise RpcError("Invalid RPC response: missing 'result' field")
        return result["result"]

    def _call(self, method: str, params: List[Any]) -> Any:
        try:
            return call_with_backoff(
                lambda: self._post(method, params),
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                retry_on=(RequestException,),
                description=f"RPC {method}",
            )
        except (RequestException, RpcError, ValueError) as e:
            raise BackendUnavailable(f"RPC {method} against {self.rpc_url} failed: {e}") from e

    def read_balance(self, account: str, asset: str) -> int:
        data = BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(account)])
        result = self._call(
            "eth_call",
            [{"to": to_checksum_address(asset), "data": "0x" + data.hex()}, "latest"],
        )
        raw = bytes.fromhex(result[2:] if result.startswith("0x") else result)
        if len(raw) < 32:
            raise BackendUnavailable(f"balanceOf returned {len(raw)} bytes for {asset}")
        (balance,) = decode(["uint256"], raw[:32])
        logger.debug(f"Balance of {account} on {asset}: {balance}")
        return balance

    def get_code(self, address: str) -> bytes:
        result = self._call("eth_getCode", [to_checksum_address(address), "latest"])
        return bytes.fromhex(result[2:] if result.startswith("0x") else result)
