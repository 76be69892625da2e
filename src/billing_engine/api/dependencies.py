"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.services import BillingServices, ServiceBundle


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency.

    Commits when the endpoint returns normally, rolls back otherwise.
    """
    factory = request.app.state.session_factory
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


async def get_services(request: Request, db: DbSession) -> ServiceBundle:
    """Bind the startup-time service configuration to this request's session."""
    services: BillingServices = request.app.state.services
    return services.for_session(db)


async def get_actor_id(
    x_actor_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract acting user ID from header."""
    if not x_actor_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-ID header is required",
        )
    try:
        return UUID(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Actor-ID format",
        )


# Type aliases for cleaner dependency injection
Services = Annotated[ServiceBundle, Depends(get_services)]
ActorId = Annotated[UUID, Depends(get_actor_id)]
