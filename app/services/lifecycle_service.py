"""Creation, editing and removal of catalog entries and their assets."""
import logging
from typing import Dict, List

from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    Forbidden, GameShareError, IncompleteSubmission, InvalidMetadata,
    NotFound, PersistenceFailure, StorageFailure,
)
from ..repositories.asset_repository import KIND_GAME_FILE, KIND_IMAGE

TITLE_MIN, TITLE_MAX = 2, 100
DESCRIPTION_MAX = 500
MAX_TAGS, TAG_MAX = 10, 20

EDITABLE_FIELDS = ('title', 'description', 'category', 'tags')
ADMIN_FIELDS = ('is_active', 'is_verified')


def validate_metadata(metadata: Dict, categories, partial: bool = False) -> Dict:
    """Normalize and check user-supplied game details.

    Args:
        metadata:   Raw values (``title``, ``description``, ``category``,
                    ``tags``).
        categories: Allowed category names.
        partial:    When ``True`` (edits) only the keys present are checked
                    and returned; otherwise defaults are filled in.

    Returns:
        Dict with cleaned values.

    Raises:
        InvalidMetadata: first rule that fails, with a user-facing message.
    """
    cleaned: Dict = {}

    if 'title' in metadata or not partial:
        title = metadata.get('title')
        title = title.strip() if isinstance(title, str) else ''
        if not TITLE_MIN <= len(title) <= TITLE_MAX:
            raise InvalidMetadata('Title must be between 2 and 100 characters')
        cleaned['title'] = title

    if 'description' in metadata or not partial:
        description = metadata.get('description') or ''
        if not isinstance(description, str):
            raise InvalidMetadata('Description must be text')
        description = description.strip()
        if len(description) > DESCRIPTION_MAX:
            raise InvalidMetadata('Description cannot exceed 500 characters')
        cleaned['description'] = description

    if 'category' in metadata or not partial:
        category = metadata.get('category') or 'Other'
        if category not in categories:
            raise InvalidMetadata('Invalid category')
        cleaned['category'] = category

    if 'tags' in metadata or not partial:
        cleaned['tags'] = _clean_tags(metadata.get('tags'))

    return cleaned


def _clean_tags(tags) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str) or not isinstance(tags, (list, tuple)):
        raise InvalidMetadata('Tags must be an array with maximum 10 items')
    result: List[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            raise InvalidMetadata('Tags must be text')
        tag = tag.strip()
        if not tag:
            continue
        if len(tag) > TAG_MAX:
            raise InvalidMetadata('Each tag cannot exceed 20 characters')
        if tag not in result:
            result.append(tag)
    if len(result) > MAX_TAGS:
        raise InvalidMetadata('Tags must be an array with maximum 10 items')
    return result


class LifecycleService:
    """Coordinates the asset store and the catalog.

    Creating an entry stores the image, then the game file, then the
    database row.  If any step fails every asset already written is deleted
    again, so a failed submission never leaves orphan files behind.

    Removal is always a hard delete (row and both assets).  ``is_active`` is
    a moderation switch only administrators flip; it hides an entry without
    deleting anything.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.
    """

    def __init__(self, db_module, asset_repository) -> None:
        """
        Args:
            db_module:        The imported ``database`` module.
            asset_repository: :class:`~app.repositories.asset_repository.AssetRepository`.
        """
        self._db = db_module
        self._assets = asset_repository
        self._log = logging.getLogger('gameshare.service.LifecycleService')

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, db, owner, metadata: Dict, image=None, game_file=None):
        """Store both uploads and persist a new catalog entry.

        Args:
            db:        SQLAlchemy session.
            owner:     :class:`~app.services.user_service.Principal` uploading.
            metadata:  Raw details (title, description, category, tags).
            image:     Cover :class:`~app.repositories.asset_repository.Upload`.
            game_file: Game payload ``Upload``.

        Returns:
            The persisted ``Game``.
        """
        details = validate_metadata(metadata, self._db.CATEGORIES)
        if image is None or game_file is None:
            raise IncompleteSubmission()

        # Reject bad types/declared sizes before anything touches the disk.
        self._assets.validate(KIND_IMAGE, image.filename, image.mimetype, image.size)
        self._assets.validate(KIND_GAME_FILE, game_file.filename, game_file.mimetype, game_file.size)

        stored = []
        try:
            stored_image = self._assets.store(KIND_IMAGE, image.filename, image.mimetype,
                                              image.size, image.stream)
            stored.append(stored_image)
            stored_file = self._assets.store(KIND_GAME_FILE, game_file.filename,
                                             game_file.mimetype, game_file.size,
                                             game_file.stream)
            stored.append(stored_file)
            game = self._db.create_game(
                db,
                tags=details['tags'],
                title=details['title'],
                description=details['description'],
                category=details['category'],
                owner_id=owner.id,
                owner_name=owner.display_name,
                image_url=stored_image.url,
                file_url=stored_file.url,
                file_name=stored_file.original_name,
                file_size=stored_file.size_bytes,
                file_type=stored_file.extension,
                download_count=0,
                rating_sum=0,
                rating_count=0,
                is_active=True,
                is_verified=False,
            )
        except SQLAlchemyError as exc:
            self._rollback_assets(stored)
            self._log.error("Persisting new game for %s failed: %s", owner.id, exc)
            raise PersistenceFailure('Server error during upload') from exc
        except GameShareError:
            self._rollback_assets(stored)
            raise
        except Exception:
            self._rollback_assets(stored)
            self._log.exception("Unexpected error while creating game for %s", owner.id)
            raise

        try:
            if not self._db.add_user_upload(db, owner.id, game.id):
                self._log.warning("Upload bookkeeping skipped: user %s not found", owner.id)
        except SQLAlchemyError as exc:
            db.rollback()
            self._log.warning("Upload bookkeeping for %s failed: %s", owner.id, exc)

        self._log.info("Game %s created by %s", game.id, owner.id)
        return game

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, db, game_id: str, requester, fields: Dict):
        """Edit an entry's details.

        Owners and administrators may change title, description, category
        and tags; administrators may also set ``is_active`` / ``is_verified``.
        """
        game = self._get_manageable(db, game_id, requester)

        admin_values = {k: fields[k] for k in ADMIN_FIELDS if k in fields}
        if admin_values and not requester.is_admin:
            raise Forbidden('Only administrators can change moderation flags')
        editable = {k: fields[k] for k in EDITABLE_FIELDS if k in fields}
        details = validate_metadata(editable, self._db.CATEGORIES, partial=True)

        for key, value in details.items():
            if key == 'tags':
                self._db.set_game_tags(game, value)
            else:
                setattr(game, key, value)
        for key, value in admin_values.items():
            setattr(game, key, bool(value))

        try:
            self._db.commit(db)
        except SQLAlchemyError as exc:
            self._log.error("Updating game %s failed: %s", game_id, exc)
            raise PersistenceFailure() from exc
        return game

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(self, db, game_id: str, requester) -> None:
        """Hard-delete an entry and its assets.

        Raises:
            NotFound:  no entry with *game_id*.
            Forbidden: *requester* is neither the owner nor an administrator.
        """
        game = self._get_manageable(db, game_id, requester)
        self._remove(db, game)

    def delete_all_for_owner(self, db, owner_id: str) -> int:
        """Hard-delete every entry uploaded by *owner_id*; returns the count."""
        games = self._db.games_for_owner(db, owner_id)
        for game in games:
            self._remove(db, game)
        return len(games)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_manageable(self, db, game_id: str, requester):
        game = self._db.get_game(db, game_id)
        if game is None:
            raise NotFound('Game not found')
        if requester is None or not (requester.is_admin or game.owner_id == requester.id):
            raise Forbidden()
        return game

    def _remove(self, db, game) -> None:
        game_id, owner_id = game.id, game.owner_id
        refs = (game.image_url, game.file_url)
        try:
            self._db.delete_game(db, game)
        except SQLAlchemyError as exc:
            self._log.error("Deleting game %s failed: %s", game_id, exc)
            raise PersistenceFailure() from exc

        for ref in refs:
            try:
                if not self._assets.delete(ref):
                    self._log.info("Asset %s was already gone", ref)
            except StorageFailure:
                self._log.warning("Could not remove asset %s of deleted game %s", ref, game_id)

        try:
            self._db.remove_user_upload(db, owner_id, game_id)
        except SQLAlchemyError as exc:
            db.rollback()
            self._log.warning("Upload bookkeeping for %s failed: %s", owner_id, exc)
        self._log.info("Game %s deleted", game_id)

    def _rollback_assets(self, stored: List) -> None:
        for asset in stored:
            try:
                self._assets.delete(asset.url)
            except StorageFailure:
                self._log.error("Could not clean up orphan asset %s", asset.url)
