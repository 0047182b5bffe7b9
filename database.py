#!/usr/bin/env python3
"""
Database models and configuration for Game Share.
Holds users, the game catalog, reviews and download history.
"""

import os
import json
import uuid
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from sqlalchemy import (
    create_engine, Column, Integer, BigInteger, String, Boolean, DateTime,
    Text, ForeignKey, UniqueConstraint, case, func, or_, update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.orderinglist import ordering_list
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool

logger = logging.getLogger('gameshare.database')

# Database URL - any SQLAlchemy URL works; SQLite is the zero-setup default
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///gameshare.db')

CATEGORIES = ('Action', 'Adventure', 'RPG', 'Strategy', 'Sports', 'Racing', 'Puzzle', 'Other')
DEFAULT_CATEGORY = 'Other'

Base = declarative_base()

engine = None
SessionLocal = None


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + 'Z' if value else None


def format_file_size(size: int) -> str:
    """Human-readable byte count, e.g. ``524288000`` -> ``'500 MB'``."""
    if not size:
        return '0 Bytes'
    units = ['Bytes', 'KB', 'MB', 'GB']
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def average_rating(rating_sum: int, rating_count: int) -> float:
    """Average rounded half-up to one decimal; 0 when nobody rated."""
    if not rating_count:
        return 0
    avg = Decimal(rating_sum) / Decimal(rating_count)
    return float(avg.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP))


class User(Base):
    """User account."""
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)  # werkzeug salted hash
    role = Column(String(20), default='user')  # 'admin' or 'user'
    is_verified = Column(Boolean, default=True)
    total_uploads = Column(Integer, default=0, nullable=False)
    total_downloads = Column(Integer, default=0, nullable=False)
    games_uploaded = Column(Text, default='[]')  # JSON array of game ids
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def uploaded_ids(self) -> List[str]:
        try:
            return json.loads(self.games_uploaded or '[]')
        except ValueError:
            return []

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    def to_dict(self) -> Dict:
        """Public profile (never includes the password hash)."""
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'isVerified': bool(self.is_verified),
            'totalUploads': self.total_uploads or 0,
            'totalDownloads': self.total_downloads or 0,
            'gamesUploaded': self.uploaded_ids,
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }


class Game(Base):
    """One shared game: metadata, asset references and aggregate stats."""
    __tablename__ = "games"

    id = Column(String(32), primary_key=True, default=_new_id)
    title = Column(String(100), nullable=False)
    description = Column(String(500), default='')
    owner_id = Column(String(32), ForeignKey("users.id"), index=True, nullable=False)
    owner_name = Column(String(50), nullable=False)  # snapshot, may go stale
    image_url = Column(String(1024), nullable=False)
    file_url = Column(String(1024), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_type = Column(String(16), nullable=False)
    download_count = Column(Integer, default=0, nullable=False, index=True)
    rating_sum = Column(Integer, default=0, nullable=False)
    rating_count = Column(Integer, default=0, nullable=False)
    category = Column(String(20), default=DEFAULT_CATEGORY, index=True)
    is_active = Column(Boolean, default=True, index=True)
    is_verified = Column(Boolean, default=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tags = relationship("GameTag", order_by="GameTag.position",
                        collection_class=ordering_list('position'),
                        cascade="all, delete-orphan")
    reviews = relationship("GameReview", order_by="GameReview.id",
                           back_populates="game", cascade="all, delete-orphan")
    download_history = relationship("GameDownload", order_by="GameDownload.id",
                                    cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    @property
    def tag_names(self) -> List[str]:
        return [t.name for t in self.tags]

    @property
    def average_rating(self) -> float:
        return average_rating(self.rating_sum or 0, self.rating_count or 0)

    @property
    def formatted_file_size(self) -> str:
        return format_file_size(self.file_size or 0)

    def to_dict(self, include_reviews: bool = False, include_history: bool = False) -> Dict:
        data = {
            'id': self.id,
            'title': self.title,
            'description': self.description or '',
            'uploader': {'id': self.owner_id, 'name': self.owner_name},
            'uploaderName': self.owner_name,
            'imageUrl': self.image_url,
            'fileUrl': self.file_url,
            'fileName': self.file_name,
            'fileSize': self.file_size,
            'formattedFileSize': self.formatted_file_size,
            'fileType': self.file_type,
            'downloads': self.download_count or 0,
            'rating': {
                'sum': self.rating_sum or 0,
                'count': self.rating_count or 0,
                'average': self.average_rating,
            },
            'averageRating': self.average_rating,
            'tags': self.tag_names,
            'category': self.category,
            'isActive': bool(self.is_active),
            'isVerified': bool(self.is_verified),
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }
        if include_reviews:
            data['reviews'] = [r.to_dict() for r in self.reviews]
        if include_history:
            data['downloadHistory'] = [d.to_dict() for d in self.download_history]
        return data


class GameTag(Base):
    """Ordered tag on a game."""
    __tablename__ = "game_tags"

    id = Column(Integer, primary_key=True)
    game_id = Column(String(32), ForeignKey("games.id", ondelete="CASCADE"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String(20), nullable=False, index=True)


class GameReview(Base):
    """One review per (game, reviewer)."""
    __tablename__ = "game_reviews"
    __table_args__ = (UniqueConstraint('game_id', 'user_id', name='uq_game_review_user'),)

    id = Column(Integer, primary_key=True)
    game_id = Column(String(32), ForeignKey("games.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(String(32), ForeignKey("users.id"), nullable=False)
    rating = Column(Integer, nullable=False)  # 1-5
    comment = Column(String(200), default='')
    created_at = Column(DateTime, default=utcnow)

    game = relationship("Game", back_populates="reviews")
    user = relationship("User")

    def to_dict(self) -> Dict:
        return {
            'user': {'id': self.user_id, 'name': self.user.name if self.user else None},
            'rating': self.rating,
            'comment': self.comment or '',
            'createdAt': _iso(self.created_at),
        }


class GameDownload(Base):
    """Append-only download history record."""
    __tablename__ = "game_downloads"

    id = Column(Integer, primary_key=True)
    game_id = Column(String(32), ForeignKey("games.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(String(32), nullable=True)
    ip_address = Column(String(45), nullable=True)
    downloaded_at = Column(DateTime, default=utcnow)

    def to_dict(self) -> Dict:
        return {
            'user': self.user_id,
            'ipAddress': self.ip_address,
            'downloadedAt': _iso(self.downloaded_at),
        }


# ---------------------------------------------------------------------------
# Engine / session management
# ---------------------------------------------------------------------------

def make_engine(database_url: str):
    """Create an engine; in-memory SQLite shares one connection across sessions."""
    if database_url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}}
        if ':memory:' in database_url or database_url in ('sqlite://', 'sqlite:///'):
            kwargs['poolclass'] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)
    return create_engine(database_url, echo=False, pool_pre_ping=True)


def configure(database_url: Optional[str] = None):
    """(Re)bind the module-level engine and session factory."""
    global engine, SessionLocal
    engine = make_engine(database_url or DATABASE_URL)
    SessionLocal = sessionmaker(autoflush=False, bind=engine)
    return SessionLocal


def get_db():
    """Get database session."""
    if SessionLocal is None:
        configure()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> bool:
    """Initialize database tables."""
    bind = bind if bind is not None else engine
    if bind is None:
        return False
    try:
        Base.metadata.create_all(bind=bind)
        logger.info("Database tables initialized successfully")
        return True
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        return False


def commit(db) -> None:
    """Commit the session, rolling back and re-raising on failure."""
    try:
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Commit failed: {e}")
        db.rollback()
        raise


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def get_user(db, user_id: str) -> Optional[User]:
    if not user_id:
        return None
    return db.get(User, user_id)


def get_user_by_email(db, email: str) -> Optional[User]:
    if not email:
        return None
    return db.query(User).filter(User.email == email.strip().lower()).first()


def create_user(db, name: str, email: str, password_hash: str,
                role: str = 'user', is_verified: bool = True) -> User:
    """Create and commit a new user."""
    user = User(name=name, email=email.strip().lower(), password=password_hash,
                role=role, is_verified=is_verified)
    db.add(user)
    commit(db)
    logger.info(f"Created user {user.email} ({role})")
    return user


def list_users(db, search: Optional[str] = None, offset: int = 0,
               limit: int = 20) -> Tuple[List[User], int]:
    query = db.query(User)
    if search:
        pattern = like_pattern(search)
        query = query.filter(or_(User.name.ilike(pattern, escape='\\'),
                                 User.email.ilike(pattern, escape='\\')))
    total = query.count()
    users = query.order_by(User.created_at.desc()).offset(offset).limit(limit).all()
    return users, total


def delete_user(db, user: User) -> None:
    db.delete(user)
    commit(db)
    logger.info(f"Deleted user {user.id}")


def count_users(db) -> int:
    return db.query(func.count(User.id)).scalar() or 0


def add_user_upload(db, user_id: str, game_id: str) -> bool:
    """Bump the user's upload counter and remember *game_id*."""
    user = get_user(db, user_id)
    if user is None:
        return False
    ids = user.uploaded_ids
    if game_id not in ids:
        ids.append(game_id)
    user.games_uploaded = json.dumps(ids)
    user.total_uploads = (user.total_uploads or 0) + 1
    commit(db)
    return True


def remove_user_upload(db, user_id: str, game_id: str) -> bool:
    """Inverse of :func:`add_user_upload`; the counter never goes below zero."""
    user = get_user(db, user_id)
    if user is None:
        return False
    ids = [i for i in user.uploaded_ids if i != game_id]
    user.games_uploaded = json.dumps(ids)
    user.total_uploads = max((user.total_uploads or 0) - 1, 0)
    commit(db)
    return True


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------

def like_pattern(text: str) -> str:
    """Substring LIKE pattern with ``%``/``_`` escaped."""
    escaped = text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


def average_rating_expr():
    """SQL expression for the average rating (sortable)."""
    return case((Game.rating_count > 0, Game.rating_sum * 1.0 / Game.rating_count), else_=0)


def create_game(db, tags: Optional[List[str]] = None, **fields) -> Game:
    """Insert and commit a catalog entry."""
    game = Game(**fields)
    game.tags = [GameTag(name=t) for t in (tags or [])]
    db.add(game)
    commit(db)
    logger.info(f"Created game {game.id} ({game.title!r})")
    return game


def get_game(db, game_id: str) -> Optional[Game]:
    if not game_id:
        return None
    return db.get(Game, game_id)


def set_game_tags(game: Game, tags: List[str]) -> None:
    game.tags = [GameTag(name=t) for t in tags]


def delete_game(db, game: Game) -> None:
    db.delete(game)
    commit(db)
    logger.info(f"Deleted game {game.id}")


def games_for_owner(db, owner_id: str) -> List[Game]:
    return db.query(Game).filter(Game.owner_id == owner_id).all()


def query_games(db, active_only: bool = True, category: Optional[str] = None,
                search: Optional[str] = None, owner_id: Optional[str] = None,
                order_by=None, offset: int = 0, limit: int = 20) -> Tuple[List[Game], int]:
    """Filtered, sorted, paginated catalog query.

    Returns:
        ``(games, total)`` where *total* counts all matches ignoring paging.
    """
    query = db.query(Game)
    if active_only:
        query = query.filter(Game.is_active.is_(True))
    if category:
        query = query.filter(Game.category == category)
    if owner_id:
        query = query.filter(Game.owner_id == owner_id)
    if search:
        pattern = like_pattern(search)
        query = query.filter(or_(
            Game.title.ilike(pattern, escape='\\'),
            Game.description.ilike(pattern, escape='\\'),
            Game.tags.any(GameTag.name.ilike(pattern, escape='\\')),
        ))
    total = query.count()
    if order_by is not None:
        query = query.order_by(*order_by)
    games = query.offset(offset).limit(limit).all()
    return games, total


def record_download(db, game: Game, user_id: Optional[str] = None,
                    ip_address: Optional[str] = None) -> None:
    """Count one download of *game* and commit.

    The counter is bumped with a single ``UPDATE ... SET n = n + 1`` so it does
    not participate in the optimistic version check used for reviews.
    """
    db.execute(update(Game.__table__)
               .where(Game.__table__.c.id == game.id)
               .values(download_count=Game.__table__.c.download_count + 1))
    if user_id or ip_address:
        db.add(GameDownload(game_id=game.id, user_id=user_id, ip_address=ip_address))
    if user_id:
        db.execute(update(User.__table__)
                   .where(User.__table__.c.id == user_id)
                   .values(total_downloads=User.__table__.c.total_downloads + 1))
    commit(db)


def get_owner_stats(db, owner_id: str) -> Dict:
    """Totals over the owner's active games."""
    row = db.query(
        func.count(Game.id),
        func.coalesce(func.sum(Game.download_count), 0),
        func.coalesce(func.sum(Game.rating_count), 0),
        func.avg(case((Game.rating_count > 0, Game.rating_sum * 1.0 / Game.rating_count))),
    ).filter(Game.owner_id == owner_id, Game.is_active.is_(True)).one()
    avg = row[3]
    return {
        'totalGames': int(row[0] or 0),
        'totalDownloads': int(row[1] or 0),
        'totalReviews': int(row[2] or 0),
        'averageRating': round(float(avg), 1) if avg is not None else 0,
    }


def get_catalog_totals(db) -> Dict:
    """Site-wide counters used by the CLI ``stats`` command."""
    return {
        'users': count_users(db),
        'games': db.query(func.count(Game.id)).scalar() or 0,
        'active_games': db.query(func.count(Game.id)).filter(Game.is_active.is_(True)).scalar() or 0,
        'downloads': db.query(func.coalesce(func.sum(Game.download_count), 0)).scalar() or 0,
        'reviews': db.query(func.count(GameReview.id)).scalar() or 0,
    }


def reviewed_game_ids(db, user_id: str) -> List[str]:
    """Ids of the games *user_id* has reviewed."""
    rows = db.query(GameReview.game_id).filter(GameReview.user_id == user_id).all()
    return [r[0] for r in rows]
