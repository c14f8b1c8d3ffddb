# paywall/x402/middleware.py
"""
Starlette binding of the x402 resource gate.

This middleware:
1. Resolves whether the request targets a priced resource
2. Hands the request to ResourceGate.admit in the thread pool (settlement
   polls the signer and blocks)
3. Returns the gate's response (402 / 400 / 500 / 503) when it did not admit
4. Otherwise runs the endpoint, then adds the ``payment-response`` header

When X402_ENABLED=false, all requests pass through unchanged.
"""
import logging
import re
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from paywall.core.config import settings
from paywall.data.articles import PREMIUM_PRICE, get_article
from paywall.x402.errors import ConfigurationError
from paywall.x402.gate import GateRequest, ProtectedResource, ResourceGate

logger = logging.getLogger(__name__)

ResourceResolver = Callable[[str, str], Optional[ProtectedResource]]

_ARTICLE_PATH = re.compile(r"^/article/(?P<slug>[^/]+)/?$")
_PREMIUM_PATH = re.compile(r"^/premium/?$")


def resolve_protected_resource(method: str, path: str) -> Optional[ProtectedResource]:
    """
    Map a request onto a priced resource.

    Returns:
        The ProtectedResource, or None if the request is free. Unknown article
        slugs are free so that the endpoint can answer 404.
    """
    if method != "GET" or not path.startswith(settings.API_PREFIX):
        return None
    route = path[len(settings.API_PREFIX):]

    match = _ARTICLE_PATH.match(route)
    if match:
        article = get_article(match.group("slug"))
        if article is None:
            return None
        return ProtectedResource(
            resource_id=article.slug,
            price=article.price,
            description=f"Article: {article.title}",
        )

    if _PREMIUM_PATH.match(route):
        return ProtectedResource(
            resource_id="premium",
            price=PREMIUM_PRICE,
            description="Premium AI insight about Arc blockchain",
        )

    return None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment middleware for FastAPI.

    The gate is injected (tests) or built on first use from settings.
    """

    def __init__(
        self,
        app,
        gate: Optional[ResourceGate] = None,
        resolver: ResourceResolver = resolve_protected_resource,
    ):
        super().__init__(app)
        self._gate = gate
        self.resolver = resolver

    @property
    def gate(self) -> ResourceGate:
        """Lazy initialization of the gate."""
        if self._gate is None:
            from paywall.core.dependencies import get_gate
            self._gate = get_gate()
        return self._gate

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not settings.X402_ENABLED:
            return await call_next(request)

        resource = self.resolver(request.method, request.url.path)
        if resource is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        logger.info(f"x402: processing paid request from {client_ip}: {request.method} {request.url.path}")

        try:
            gate = self.gate
        except ConfigurationError as e:
            logger.error(f"x402: cannot build payment gate: {e}")
            return JSONResponse(status_code=e.status_code, content={"success": False, "error": e.reason})

        gate_request = GateRequest(
            method=request.method,
            url=str(request.url),
            resource=resource,
            headers=dict(request.headers),
            client_ip=client_ip,
        )
        decision = await run_in_threadpool(gate.admit, gate_request)
        if not decision.admitted:
            response = decision.response
            return JSONResponse(
                status_code=response.status_code,
                content=response.body,
                headers=response.headers,
            )

        request.state.payer = decision.payer
        request.state.settlement = decision.settlement

        response = await call_next(request)
        for name, value in gate.fulfill(decision).items():
            response.headers[name] = value
        return response
