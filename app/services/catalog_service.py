"""Read side of the catalog: listing, searching, sorting and paging."""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..errors import InvalidQuery, NotFound


@dataclass
class CatalogPage:
    """One page of catalog results."""
    items: List
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    def pagination(self) -> Dict:
        return {
            'page': self.page,
            'limit': self.page_size,
            'total': self.total,
            'pages': self.pages,
        }


class CatalogService:
    """Public browsing over active catalog entries.

    Only active entries are ever listed.  Sort keys use the names the REST
    API exposes (``createdAt``, ``downloads``, ...); snake_case aliases are
    accepted as well.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.
    """

    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100
    DEFAULT_SORT = 'createdAt'

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``query_games``, ``get_game``, ``get_owner_stats``,
                ``Game`` and ``CATEGORIES``).
        """
        self._db = db_module
        game = db_module.Game
        self._sort_columns = {
            'createdAt': game.created_at,
            'created_at': game.created_at,
            'updatedAt': game.updated_at,
            'updated_at': game.updated_at,
            'title': game.title,
            'downloads': game.download_count,
            'download_count': game.download_count,
            'rating': db_module.average_rating_expr(),
            'fileSize': game.file_size,
            'file_size': game.file_size,
        }

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list(self, db, category: Optional[str] = None, search: Optional[str] = None,
             sort: Optional[str] = None, order: Optional[str] = 'desc',
             page=1, page_size=None, owner_id: Optional[str] = None) -> CatalogPage:
        """Return one page of active entries.

        Args:
            db:        SQLAlchemy session.
            category:  Exact category; ``None``, ``''`` or ``'all'`` for any.
            search:    Case-insensitive substring matched against title,
                       description and tags.
            sort:      Sort key (default ``createdAt``).
            order:     ``'asc'`` or ``'desc'`` (default).
            page:      1-indexed page number.  Pages past the end (or below 1)
                       yield no items but still report the total.
            page_size: Items per page, 1-100 (default 20).
            owner_id:  Restrict to one uploader.

        Raises:
            InvalidQuery: unknown category, sort key or order, or non-numeric
                paging values.
        """
        category = self._normalize_category(category)
        order_by = self._order_by(sort, order)
        page = self._as_int(page, 'page')
        page_size = self._as_int(page_size if page_size is not None else self.DEFAULT_PAGE_SIZE, 'limit')
        page_size = max(1, min(page_size, self.MAX_PAGE_SIZE))
        search = (search or '').strip() or None

        if page < 1:
            _, total = self._db.query_games(db, category=category, search=search,
                                            owner_id=owner_id, limit=0)
            return CatalogPage(items=[], total=total, page=page, page_size=page_size)

        items, total = self._db.query_games(
            db, category=category, search=search, owner_id=owner_id,
            order_by=order_by, offset=(page - 1) * page_size, limit=page_size)
        return CatalogPage(items=items, total=total, page=page, page_size=page_size)

    def popular(self, db, limit: int = 10) -> List:
        """Most downloaded active entries."""
        return self.list(db, sort='downloads', order='desc', page=1, page_size=limit).items

    def recent(self, db, limit: int = 10) -> List:
        """Newest active entries."""
        return self.list(db, sort='createdAt', order='desc', page=1, page_size=limit).items

    def search(self, db, query: str, limit: int = 20) -> List:
        return self.list(db, search=query, page=1, page_size=limit).items

    # ------------------------------------------------------------------
    # Single entry / stats
    # ------------------------------------------------------------------

    def get(self, db, game_id: str, requester=None):
        """Return one entry.

        Inactive entries are reported as missing unless *requester* is the
        owner or an administrator.
        """
        game = self._db.get_game(db, game_id)
        if game is None:
            raise NotFound('Game not found')
        if not game.is_active and not self.can_manage(game, requester):
            raise NotFound('Game not found')
        return game

    def owner_stats(self, db, owner_id: str) -> Dict:
        return self._db.get_owner_stats(db, owner_id)

    @staticmethod
    def can_manage(game, requester) -> bool:
        """True if *requester* owns *game* or is an administrator."""
        if requester is None:
            return False
        return requester.is_admin or game.owner_id == requester.id

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _normalize_category(self, category: Optional[str]) -> Optional[str]:
        if category is None:
            return None
        category = category.strip()
        if not category or category.lower() == 'all':
            return None
        if category not in self._db.CATEGORIES:
            raise InvalidQuery('Invalid category')
        return category

    def _order_by(self, sort: Optional[str], order: Optional[str]):
        column = self._sort_columns.get(sort or self.DEFAULT_SORT)
        if column is None:
            raise InvalidQuery(f"Cannot sort by {sort!r}")
        order = (order or 'desc').lower()
        if order not in ('asc', 'desc'):
            raise InvalidQuery("order must be 'asc' or 'desc'")
        primary = column.desc() if order == 'desc' else column.asc()
        # Stable paging when many rows share the sort value.
        return [primary, self._db.Game.id.asc()]

    @staticmethod
    def _as_int(value, name: str) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InvalidQuery(f"{name} must be an integer")
