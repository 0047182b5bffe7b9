"""Business logic for game reviews and the aggregate rating."""
import logging
from typing import List

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import InvalidComment, InvalidRating, NotFound, PersistenceFailure

MAX_COMMENT_LENGTH = 200


def validate_rating(rating) -> int:
    """Return *rating* if it is an integer 1-5, else raise :class:`InvalidRating`."""
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidRating()
    return rating


def validate_comment(comment) -> str:
    if comment is None:
        return ''
    if not isinstance(comment, str):
        raise InvalidComment('Comment must be text')
    comment = comment.strip()
    if len(comment) > MAX_COMMENT_LENGTH:
        raise InvalidComment()
    return comment


class ReviewService:
    """Validates and applies review operations on catalog entries.

    Rules
    -----
    * ``rating`` must be an integer in the range **1-5** (inclusive).
    * ``comment`` is optional free text of at most 200 characters.
    * One review per reviewer: a second call from the same reviewer replaces
      the rating, comment and timestamp (upsert semantics).
    * ``rating_sum`` / ``rating_count`` are recomputed from all reviews after
      every change and saved under the entry's optimistic version check.
      A version conflict means another reviewer wrote concurrently; the
      whole read-modify-write is retried.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.
    """

    MAX_ATTEMPTS = 5

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``get_game``, ``GameReview`` and ``commit``).
        """
        self._db = db_module
        self._log = logging.getLogger('gameshare.service.ReviewService')

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_or_update(self, db, game_id: str, reviewer_id: str, rating,
                      comment: str = '') -> List:
        """Add or replace *reviewer_id*'s review of *game_id*.

        Returns:
            The entry's reviews after the change.

        Raises:
            InvalidRating, InvalidComment: bad input, nothing written.
            NotFound: the entry does not exist or is not active.
            PersistenceFailure: the database failed or conflicts persisted.
        """
        rating = validate_rating(rating)
        comment = validate_comment(comment)

        def mutate(game):
            now = self._db.utcnow()
            review = self._find(game, reviewer_id)
            if review is not None:
                review.rating = rating
                review.comment = comment
                review.created_at = now
            else:
                game.reviews.append(self._db.GameReview(
                    user_id=reviewer_id, rating=rating, comment=comment, created_at=now))
            return True

        game = self._apply(db, game_id, mutate)
        self._log.info("Review by %s on %s saved (rating=%d)", reviewer_id, game_id, rating)
        return list(game.reviews)

    def remove(self, db, game_id: str, reviewer_id: str) -> bool:
        """Delete *reviewer_id*'s review of *game_id*.

        Returns:
            ``True`` if a review existed and was removed; ``False`` otherwise.
        """
        removed = []

        def mutate(game):
            review = self._find(game, reviewer_id)
            if review is None:
                return False
            game.reviews.remove(review)
            removed.append(review)
            return True

        self._apply(db, game_id, mutate, require_active=False)
        return bool(removed)

    def get_all(self, db, game_id: str) -> List:
        """Return the reviews of an active entry."""
        game = self._db.get_game(db, game_id)
        if game is None or not game.is_active:
            raise NotFound('Game not found')
        return list(game.reviews)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _find(game, reviewer_id: str):
        for review in game.reviews:
            if review.user_id == reviewer_id:
                return review
        return None

    @staticmethod
    def recompute(game) -> None:
        """Rebuild the aggregate from the review list."""
        game.rating_sum = sum(r.rating for r in game.reviews)
        game.rating_count = len(game.reviews)

    def _apply(self, db, game_id: str, mutate, require_active: bool = True):
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                game = self._db.get_game(db, game_id)
                if game is None or (require_active and not game.is_active):
                    raise NotFound('Game not found')
                if not mutate(game):
                    return game
                self.recompute(game)
                # Always touch the row so the version check guards the write.
                game.updated_at = self._db.utcnow()
                db.commit()
                return game
            except (StaleDataError, IntegrityError) as exc:
                db.rollback()
                self._log.debug("Concurrent review update on %s (attempt %d): %s",
                                game_id, attempt, exc)
            except SQLAlchemyError as exc:
                db.rollback()
                self._log.error("Saving review on %s failed: %s", game_id, exc)
                raise PersistenceFailure() from exc
        self._log.error("Giving up on review update for %s after %d attempts",
                        game_id, self.MAX_ATTEMPTS)
        raise PersistenceFailure()
