"""Error taxonomy shared by repositories, services and the HTTP layer.

Every error carries the HTTP ``status_code`` the web layer answers with and a
``message`` that is safe to show to the caller.  Storage and persistence
failures always present an opaque message; their cause is logged where they
are raised.
"""


class GameShareError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    default_message = 'Server error'

    def __init__(self, message: str = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(GameShareError):
    """The caller sent something we will never accept; no state was changed."""

    status_code = 400
    default_message = 'Invalid request'


class InvalidMetadata(ValidationError):
    default_message = 'Invalid game details'


class InvalidAssetType(ValidationError):
    default_message = 'Unsupported file type'


class IncompleteSubmission(ValidationError):
    default_message = 'Both image and game file are required'


class InvalidRating(ValidationError):
    default_message = 'Rating must be between 1 and 5'


class InvalidComment(ValidationError):
    default_message = 'Comment cannot exceed 200 characters'


class InvalidQuery(ValidationError):
    default_message = 'Invalid query parameters'


class AssetTooLarge(GameShareError):
    status_code = 413
    default_message = 'File is too large'


class AuthenticationError(GameShareError):
    status_code = 401
    default_message = 'Not authorized'


class Forbidden(GameShareError):
    status_code = 403
    default_message = 'Not authorized to perform this action'


class NotFound(GameShareError):
    status_code = 404
    default_message = 'Not found'


class StorageFailure(GameShareError):
    """Disk-level failure (disk full, permissions, ...)."""

    default_message = 'Server error during upload'


class PersistenceFailure(GameShareError):
    """Database-level failure."""

    default_message = 'Server error'
