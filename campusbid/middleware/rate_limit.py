"""
CampusBid Escrow — Rate Limiting Configuration
Uses slowapi to enforce per-IP rate limits.
Code-entry endpoints get the tightest tier; the per-user attempt counters
in the database apply on top of it.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

# ── Global rate limiter (keyed by client IP) ──
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["60/minute"],          # Global: 60 req/min per IP
    storage_uri="memory://",               # In-memory store (production: use Redis)
)

# ── Rate limit strings for specific endpoint tiers ──
RATE_LIMIT_CODE = "10/minute"       # Delivery / confirmation code entry
RATE_LIMIT_WRITE = "30/minute"      # Write endpoints (POST/PUT/DELETE)
RATE_LIMIT_WEBHOOK = "300/minute"   # Provider callbacks arrive in bursts
