"""FastAPI dependencies for authentication, sessions and time."""

import logging
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .clock import Clock, utc_now
from .config import Settings, get_settings
from .database import get_session, get_session_factory
from .security import CallerIdentity, authenticate_request

logger = logging.getLogger(__name__)


async def require_function_auth(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> CallerIdentity:
    """Run the shared auth gate. AuthenticationError maps to 401."""
    caller = authenticate_request(request.headers, settings)
    logger.info(f"{request.url.path} invoked by {caller.kind} (sub={caller.subject})")
    return caller


def get_clock() -> Clock:
    return utc_now


SessionDep = Annotated[AsyncSession, Depends(get_session)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
CallerDep = Annotated[CallerIdentity, Depends(require_function_auth)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
ClockDep = Annotated[Clock, Depends(get_clock)]
