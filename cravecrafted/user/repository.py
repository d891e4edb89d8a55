from typing import Optional
from uuid import UUID
from sqlalchemy import select
from cravecrafted.schema.full_schema import Users


async def identify_user_by_pid(session, user_pid) -> Optional[int]:
    try:
        pid = user_pid if isinstance(user_pid, UUID) else UUID(str(user_pid))
    except ValueError:
        return None
    stmt = select(Users.id).where(Users.public_id == pid)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def get_user_by_id(session, user_id: int) -> Optional[Users]:
    res = await session.execute(select(Users).where(Users.id == user_id))
    return res.scalar_one_or_none()
