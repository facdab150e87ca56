"""FastAPI dependency injection functions."""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from clinic_dispatch import config
from clinic_dispatch.service import DispatchService, build_service


@dataclass
class Actor:
    """Caller identity as forwarded by the upstream auth gateway."""
    user_id: Optional[str]
    role: Optional[str]

    @property
    def is_staff(self) -> bool:
        return self.role in config.STAFF_ROLES


@lru_cache(maxsize=1)
def get_service() -> DispatchService:
    """
    Get the dispatch service (cached singleton).

    Pattern: Create once, reuse across requests. The service owns the
    store's connection pool and the notifier's subscriber registry, so
    there must be exactly one per process.
    """
    return build_service()


async def get_actor(
    x_user_id: Optional[str] = Header(None, description="Authenticated user id"),
    x_user_role: Optional[str] = Header(None, description="Authenticated user role")
) -> Actor:
    """Read the caller from gateway headers (absent headers mean anonymous)."""
    return Actor(
        user_id=x_user_id,
        role=x_user_role.lower() if x_user_role else None,
    )


async def require_staff(actor: Actor = Depends(get_actor)) -> Actor:
    """
    FastAPI dependency for queue-driving endpoints.

    Raises:
        HTTPException 401: No authenticated user
        HTTPException 403: User is not clinic staff
    """
    if not actor.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header required",
        )
    if not actor.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{actor.role}' cannot manage doctor queues",
        )
    return actor
