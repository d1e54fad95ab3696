"""Routes mounted on every role.

/health is the liveness check: it must answer while Postgres or object
storage are down, so it touches neither.
"""

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}
