"""
Authentication and authorization service
Implements password hashing and user management
"""
import logging
from typing import Optional

import bcrypt
from psycopg2 import errors as pg_errors

from backend.errors import ValidationError
from database import DatabaseManager, User, UserRole, row_to_user

logger = logging.getLogger(__name__)

_USER_COLS = "id, username, email, password_hash, role, created_at"


class AuthService:
    """Service for user registration and authentication"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    @staticmethod
    def hash_password(password: str) -> str:
        """
        Hash a password using bcrypt

        Args:
            password: Plain text password

        Returns:
            Hashed password
        """
        salt = bcrypt.gensalt()
        return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        """Verify a password against its hash"""
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))

    def register(self, username: str, email: str, password: str,
                 role: UserRole = UserRole.USER) -> User:
        """
        Register a new user

        Raises:
            ValidationError: If the username or email is already taken
        """
        try:
            with self.db.get_cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO users (username, email, password_hash, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING {_USER_COLS}
                """, (username, email.lower(), self.hash_password(password), role.value))
                user = row_to_user(cursor.fetchone())
        except pg_errors.UniqueViolation as e:
            raise ValidationError(f"User with username {username} or email {email} already exists") from e

        logger.info("Registered %s user %s", user.role.value, user.username,
                    extra={'user_id': user.id})
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """Return the user if the credentials match, None otherwise"""
        user = self.get_user_by_email(email)
        if user and self.verify_password(password, user.password_hash):
            return user
        return None

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self.db.get_cursor() as cursor:
            cursor.execute(f"SELECT {_USER_COLS} FROM users WHERE id = %s", (user_id,))
            return row_to_user(cursor.fetchone())

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.db.get_cursor() as cursor:
            cursor.execute(f"SELECT {_USER_COLS} FROM users WHERE email = %s", (email.lower(),))
            return row_to_user(cursor.fetchone())

    def is_admin(self, user_id: int) -> bool:
        """Check if user is an admin"""
        user = self.get_user_by_id(user_id)
        return bool(user) and user.role == UserRole.ADMIN
