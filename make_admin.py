# Призначення ролі admin існуючому користувачу (bootstrap першого адміністратора)
import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import async_session, engine
from app.core.errors import UserNotFound
from app.models import AdminLog, AdminOperationType, User, UserRole
from app.utils.logging import generate_admin_log_id, get_extra_data_log

logger = logging.getLogger("[ADMIN]")


async def promote(
    session: AsyncSession,
    email: Optional[str] = None,
    user_id: Optional[str] = None,
) -> User:
    """Give the admin role to an existing account found by id or email."""
    if user_id:
        user = await session.get(User, user_id)
    else:
        result = await session.execute(
            select(User)
            .where(func.lower(User.email) == (email or "").strip().lower())
            .order_by(User.created_at)
        )
        user = result.scalars().first()
    if user is None:
        raise UserNotFound(f"User '{user_id or email}' not found.")

    if user.role == UserRole.ADMIN:
        return user

    old_role = user.role
    user.role = UserRole.ADMIN
    new_admin_log = AdminLog(
        id=generate_admin_log_id(AdminOperationType.CHANGE_ROLE.value),
        operation_type=AdminOperationType.CHANGE_ROLE,
        admin_id="cli",
        entity="User",
        entity_id=user.id,
        changes={"field": "role", "old": old_role.value, "new": UserRole.ADMIN.value},
        created_at=datetime.now(timezone.utc),
    )
    session.add(new_admin_log)
    await session.commit()

    logger.info("Changed role. AdminLog:", extra=get_extra_data_log(new_admin_log))
    return user


async def main(email: Optional[str], user_id: Optional[str]) -> int:
    try:
        async with async_session() as session:
            user = await promote(session, email=email, user_id=user_id)
    except UserNotFound as e:
        print(e.message, file=sys.stderr)
        return 1
    finally:
        await engine.dispose()

    print(f"'{user.id}' ({user.email}) is now admin")
    return 0


if __name__ == "__main__":
    p = argparse.ArgumentParser(description="Promote an existing user to admin")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--email")
    target.add_argument("--user-id")
    args = p.parse_args()
    sys.exit(asyncio.run(main(args.email, args.user_id)))
