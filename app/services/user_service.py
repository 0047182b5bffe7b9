"""Business logic for accounts, credentials and the acting principal."""
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from .catalog_service import CatalogPage
from ..errors import (
    AuthenticationError, Forbidden, InvalidMetadata, NotFound, PersistenceFailure,
    ValidationError,
)

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
NAME_MIN, NAME_MAX = 2, 50
PASSWORD_MIN = 6
ROLES = ('user', 'admin')
DEFAULT_TOKEN_MAX_AGE = 30 * 24 * 3600


@dataclass(frozen=True)
class Principal:
    """The resolved identity acting on a request."""
    id: str
    display_name: str
    role: str = 'user'

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    @classmethod
    def from_user(cls, user) -> 'Principal':
        return cls(id=user.id, display_name=user.name, role=user.role or 'user')


def _clean_name(name) -> str:
    name = name.strip() if isinstance(name, str) else ''
    if not NAME_MIN <= len(name) <= NAME_MAX:
        raise ValidationError('Name must be between 2 and 50 characters')
    return name


def _clean_email(email) -> str:
    email = email.strip().lower() if isinstance(email, str) else ''
    if not EMAIL_RE.match(email):
        raise ValidationError('Please provide a valid email')
    return email


def _check_password(password, message: str = 'Password must be at least 6 characters long') -> str:
    if not isinstance(password, str) or len(password) < PASSWORD_MIN:
        raise ValidationError(message)
    return password


class UserService:
    """Registration, login, signed tokens and account administration.

    Password hashing and token signing are delegated to ``werkzeug.security``
    and ``itsdangerous``; this class only decides *when* to call them.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.
    """

    TOKEN_SALT = 'gameshare-auth'

    def __init__(self, db_module, secret_key: str,
                 token_max_age: int = DEFAULT_TOKEN_MAX_AGE) -> None:
        """
        Args:
            db_module:     The imported ``database`` module.
            secret_key:    Key used to sign auth tokens.
            token_max_age: Token lifetime in seconds.
        """
        self._db = db_module
        self._serializer = URLSafeTimedSerializer(secret_key, salt=self.TOKEN_SALT)
        self._token_max_age = token_max_age
        self._log = logging.getLogger('gameshare.service.UserService')

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def register(self, db, name: str, email: str, password: str) -> Tuple[object, str]:
        """Create a regular account and return ``(user, token)``."""
        name = _clean_name(name)
        email = _clean_email(email)
        _check_password(password)
        if self._db.get_user_by_email(db, email) is not None:
            raise ValidationError('User with this email already exists')
        user = self._create(db, name, email, password, role='user')
        self._log.info("Registered user %s", user.id)
        return user, self.issue_token(user)

    def login(self, db, email: str, password: str) -> Tuple[object, str]:
        """Verify credentials and return ``(user, token)``."""
        if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
            raise ValidationError('Please provide a valid email')
        if not password:
            raise ValidationError('Password is required')
        user = self._db.get_user_by_email(db, email)
        if user is None or not check_password_hash(user.password, password):
            raise AuthenticationError('Invalid credentials')
        if not user.is_verified:
            raise AuthenticationError('Account not verified. Please contact administrator.')
        return user, self.issue_token(user)

    def issue_token(self, user) -> str:
        return self._serializer.dumps({'sub': user.id})

    def resolve_token(self, db, token: str) -> Principal:
        """Turn a bearer token into a :class:`Principal`.

        Raises:
            AuthenticationError: bad, expired, or orphaned token.
        """
        try:
            payload = self._serializer.loads(token, max_age=self._token_max_age)
        except SignatureExpired:
            raise AuthenticationError('Token expired')
        except BadSignature:
            raise AuthenticationError('Not authorized, token failed')
        user = self._db.get_user(db, payload.get('sub') if isinstance(payload, dict) else None)
        if user is None:
            raise AuthenticationError('Not authorized, user not found')
        return Principal.from_user(user)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def get(self, db, user_id: str):
        user = self._db.get_user(db, user_id)
        if user is None:
            raise NotFound('User not found')
        return user

    def update_profile(self, db, user_id: str, name: Optional[str] = None,
                       email: Optional[str] = None):
        """Change the caller's name and/or email.

        Existing catalog entries keep the name they were uploaded under.
        """
        user = self.get(db, user_id)
        if name:
            user.name = _clean_name(name)
        if email:
            email = _clean_email(email)
            other = self._db.get_user_by_email(db, email)
            if other is not None and other.id != user.id:
                raise ValidationError('Email is already taken')
            user.email = email
        self._commit(db, 'update profile')
        return user

    def change_password(self, db, user_id: str, current_password: str,
                        new_password: str) -> None:
        user = self.get(db, user_id)
        if not current_password:
            raise ValidationError('Current password is required')
        _check_password(new_password, 'New password must be at least 6 characters long')
        if not check_password_hash(user.password, current_password):
            raise ValidationError('Current password is incorrect')
        user.password = generate_password_hash(new_password)
        self._commit(db, 'change password')
        self._log.info("Password changed for %s", user.id)

    def stats(self, db, user_id: str) -> Dict:
        """Upload/download totals plus aggregates over the user's active games."""
        user = self.get(db, user_id)
        return {
            'user': {
                'name': user.name,
                'totalUploads': user.total_uploads or 0,
                'totalDownloads': user.total_downloads or 0,
            },
            'games': self._db.get_owner_stats(db, user.id),
        }

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def list_users(self, db, search: Optional[str] = None, page: int = 1,
                   limit: int = 20) -> CatalogPage:
        """One page of accounts; *page* and *limit* are clamped first."""
        page = max(int(page), 1)
        limit = max(1, min(int(limit), 100))
        users, total = self._db.list_users(db, search=(search or '').strip() or None,
                                           offset=(page - 1) * limit, limit=limit)
        return CatalogPage(items=users, total=total, page=page, page_size=limit)

    def admin_update(self, db, user_id: str, fields: Dict):
        """Administrator edit of name, email, role and verification flag."""
        user = self.get(db, user_id)
        if fields.get('name'):
            user.name = _clean_name(fields['name'])
        if fields.get('email'):
            email = _clean_email(fields['email'])
            other = self._db.get_user_by_email(db, email)
            if other is not None and other.id != user.id:
                raise ValidationError('Email is already taken')
            user.email = email
        if fields.get('role'):
            if fields['role'] not in ROLES:
                raise InvalidMetadata('Invalid role')
            user.role = fields['role']
        if isinstance(fields.get('isVerified'), bool):
            user.is_verified = fields['isVerified']
        self._commit(db, 'admin update')
        return user

    def delete_user(self, db, user_id: str, requester: Principal,
                    lifecycle, reviews) -> int:
        """Delete an account together with its games and reviews.

        Args:
            lifecycle: :class:`LifecycleService` used to remove the games
                       (and their files).
            reviews:   :class:`ReviewService` used to withdraw the user's
                       reviews so other games' ratings stay consistent.

        Returns:
            Number of games removed.
        """
        if not requester.is_admin:
            raise Forbidden()
        user = self.get(db, user_id)
        if user.id == requester.id:
            raise ValidationError('Cannot delete your own account')
        removed = lifecycle.delete_all_for_owner(db, user.id)
        for game_id in self._db.reviewed_game_ids(db, user.id):
            reviews.remove(db, game_id, user.id)
        try:
            self._db.delete_user(db, user)
        except SQLAlchemyError as exc:
            self._log.error("Deleting user %s failed: %s", user_id, exc)
            raise PersistenceFailure() from exc
        self._log.info("User %s deleted with %d games", user_id, removed)
        return removed

    def create_admin(self, db, name: str, email: str, password: str):
        """Create an administrator account if *email* is not registered yet.

        Returns:
            ``(user, created)`` where *created* is ``False`` when the account
            already existed.
        """
        existing = self._db.get_user_by_email(db, email)
        if existing is not None:
            return existing, False
        user = self._create(db, _clean_name(name), _clean_email(email),
                            _check_password(password), role='admin')
        return user, True

    def create_user(self, db, name: str, email: str, password: str,
                    role: str = 'user'):
        """Create an account if *email* is free; used for seeding."""
        existing = self._db.get_user_by_email(db, email)
        if existing is not None:
            return existing, False
        return self._create(db, _clean_name(name), _clean_email(email),
                            _check_password(password), role=role), True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create(self, db, name: str, email: str, password: str, role: str):
        try:
            return self._db.create_user(db, name, email, generate_password_hash(password),
                                        role=role, is_verified=True)
        except SQLAlchemyError as exc:
            self._log.error("Creating user %s failed: %s", email, exc)
            raise PersistenceFailure() from exc

    def _commit(self, db, action: str) -> None:
        try:
            self._db.commit(db)
        except SQLAlchemyError as exc:
            self._log.error("Could not %s: %s", action, exc)
            raise PersistenceFailure() from exc
