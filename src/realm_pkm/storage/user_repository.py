"""Repository for user accounts."""
import json
import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from realm_pkm.exceptions import ErrorCode, StorageError
from realm_pkm.models.db_models import DBUser
from realm_pkm.models.schema import User, ensure_timezone_aware, utc_now

logger = logging.getLogger(__name__)


class UserRepository:
    """Repository for managing user accounts."""

    def __init__(self, session_factory):
        """Initialize the user repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def _db_user_to_model(db_user: DBUser) -> User:
        return User(
            id=db_user.id,
            email=db_user.email,
            password_hash=db_user.password_hash,
            display_name=db_user.display_name,
            first_name=db_user.first_name,
            last_name=db_user.last_name,
            bio=db_user.bio,
            preferences=json.loads(db_user.preferences or "{}"),
            is_active=db_user.is_active,
            is_verified=db_user.is_verified,
            last_login_at=(
                ensure_timezone_aware(db_user.last_login_at)
                if db_user.last_login_at
                else None
            ),
            created_at=ensure_timezone_aware(db_user.created_at),
            updated_at=ensure_timezone_aware(db_user.updated_at),
        )

    @staticmethod
    def _apply_model(db_user: DBUser, user: User) -> None:
        db_user.email = user.email
        db_user.password_hash = user.password_hash
        db_user.display_name = user.display_name
        db_user.first_name = user.first_name
        db_user.last_name = user.last_name
        db_user.bio = user.bio
        db_user.preferences = json.dumps(user.preferences)
        db_user.is_active = user.is_active
        db_user.is_verified = user.is_verified
        db_user.last_login_at = user.last_login_at
        db_user.updated_at = user.updated_at

    def create(self, user: User) -> User:
        """Insert a new user.

        Raises:
            ValueError: If the email is already registered.
            StorageError: For any other database failure.
        """
        with self.session_factory() as session:
            db_user = DBUser(id=user.id, created_at=user.created_at)
            self._apply_model(db_user, user)
            session.add(db_user)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ValueError(f"Email already registered: {user.email}") from e
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(
                    "Failed to create user",
                    operation="create_user",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        return user

    def get(self, user_id: str) -> Optional[User]:
        with self.session_factory() as session:
            db_user = session.get(DBUser, user_id)
            return self._db_user_to_model(db_user) if db_user else None

    def get_by_email(self, email: str) -> Optional[User]:
        """Look up a user by email (case-insensitive)."""
        with self.session_factory() as session:
            db_user = session.scalar(
                select(DBUser).where(DBUser.email == email.strip().lower())
            )
            return self._db_user_to_model(db_user) if db_user else None

    def exists_by_email(self, email: str) -> bool:
        with self.session_factory() as session:
            count = session.scalar(
                select(func.count(DBUser.id)).where(
                    DBUser.email == email.strip().lower()
                )
            )
            return bool(count)

    def update(self, user: User) -> User:
        """Persist changes to an existing user and bump updated_at.

        Raises:
            StorageError: If the user does not exist or the write fails.
        """
        user.updated_at = utc_now()
        with self.session_factory() as session:
            db_user = session.get(DBUser, user.id)
            if db_user is None:
                raise StorageError(
                    f"User '{user.id}' does not exist",
                    operation="update_user",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                )
            self._apply_model(db_user, user)
            try:
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(
                    "Failed to update user",
                    operation="update_user",
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e
        return user

    def count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count(DBUser.id))) or 0
