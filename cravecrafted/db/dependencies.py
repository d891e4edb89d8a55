from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import  AsyncSession
from cravecrafted.db.connection import async_session

async def get_session() -> AsyncGenerator[AsyncSession,None]:
    # the context manager closes the session (and rolls back anything uncommitted) at the end of the request
    async with async_session() as session:
        yield session


async def get_session_factory():
    yield async_session
