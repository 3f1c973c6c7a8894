from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness probe for load balancers.

    Listed in ``APP_RATE_LIMIT_EXEMPT_PATHS`` by default so probes are never
    throttled.
    """

    return {"status": "ok"}
