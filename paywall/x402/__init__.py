# paywall/x402/__init__.py
"""
x402 Payment Protocol Module.

Sells HTTP resources for exact USDC micropayments using the HTTP 402
challenge/response flow and EIP-3009 transferWithAuthorization.

Key components:
- codec / models: wire format of the payment-required, payment-signature
  and payment-response headers
- pricing: payment requirements per resource
- gate / middleware: the protocol state machine and its FastAPI binding
- verifier / settler / facilitator: check, then execute, an authorization
- ledger / audit: reconciliation records and the audit trail
- client: paying side of the protocol

Configuration is loaded from environment variables via paywall.core.config.
"""

__version__ = "0.1.0"
