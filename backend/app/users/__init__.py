"""Account package providing user management and JWT utilities."""

from backend.app.users.service import AccountService
from backend.app.users.utils import JWTManager

__all__ = ["AccountService", "JWTManager"]
