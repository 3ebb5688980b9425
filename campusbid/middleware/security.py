"""
CampusBid Escrow — Security Headers Middleware
Adds OWASP-recommended HTTP security headers to every response.
"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Injects hardened HTTP security headers into every response.

    Headers applied:
      - Strict-Transport-Security (HSTS) — force HTTPS for 1 year
      - X-Content-Type-Options — prevent MIME sniffing
      - X-Frame-Options — prevent clickjacking
      - Referrer-Policy — no referrer for a JSON API
      - Content-Security-Policy — nothing may be loaded or framed
      - Cache-Control — delivery codes and balances must never be cached
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        # ── HSTS: enforce HTTPS for 1 year, include subdomains ──
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )

        # ── Prevent MIME-type sniffing ──
        response.headers["X-Content-Type-Options"] = "nosniff"

        # ── Prevent clickjacking ──
        response.headers["X-Frame-Options"] = "DENY"

        # ── Control referrer information ──
        response.headers["Referrer-Policy"] = "no-referrer"

        # ── API responses: deny-all CSP, no caching ──
        if request.url.path.startswith("/api/"):
            response.headers["Content-Security-Policy"] = (
                "default-src 'none'; frame-ancestors 'none';"
            )
            response.headers["Cache-Control"] = (
                "no-store, no-cache, must-revalidate, max-age=0"
            )
            response.headers["Pragma"] = "no-cache"

        return response
