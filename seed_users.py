"""Create or refresh the built-in admin and read-only accounts."""

import logging

from database import session_scope
from models import UserRole
from services import UserService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_USERS = [
    ("admin", "admin@financetracker.com", UserRole.admin, "Admin", "User"),
    ("readonly", "readonly@financetracker.com", UserRole.read_only, "Read", "Only"),
]


def seed_users() -> None:
    with session_scope() as session:
        service = UserService(session)
        for username, email, role, first_name, last_name in DEFAULT_USERS:
            user = service.upsert(username, email, role, first_name, last_name)
            logger.info(
                f"user_seeded: id={user.id} username={user.username} "
                f"role={user.role.value}"
            )


if __name__ == "__main__":
    seed_users()
