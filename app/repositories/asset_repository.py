"""Repository for uploaded binary assets (cover images and game files)."""
import logging
import os
import random
import tempfile
import time
from dataclasses import dataclass
from typing import BinaryIO, Dict, FrozenSet, Optional
from urllib.parse import urlparse

from werkzeug.utils import secure_filename

from ..errors import AssetTooLarge, InvalidAssetType, StorageFailure

KIND_IMAGE = 'image'
KIND_GAME_FILE = 'game-file'

DEFAULT_MAX_IMAGE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_FILE_SIZE = 1024 * 1024 * 1024


@dataclass(frozen=True)
class AssetKind:
    """Per-kind storage rules."""
    name: str
    prefix: str
    namespace: str
    extensions: FrozenSet[str]
    mime_types: Optional[FrozenSet[str]] = None


ASSET_KINDS: Dict[str, AssetKind] = {
    KIND_IMAGE: AssetKind(
        name=KIND_IMAGE,
        prefix='image',
        namespace='images',
        extensions=frozenset({'.jpeg', '.jpg', '.png', '.gif', '.webp'}),
        mime_types=frozenset({'image/jpeg', 'image/jpg', 'image/pjpeg',
                              'image/png', 'image/gif', 'image/webp'}),
    ),
    # Archive and installer MIME types are unreliable, so only the
    # extension is checked for game files.
    KIND_GAME_FILE: AssetKind(
        name=KIND_GAME_FILE,
        prefix='game',
        namespace='games',
        extensions=frozenset({'.zip', '.rar', '.7z', '.exe', '.msi', '.dmg',
                              '.pkg', '.deb', '.rpm', '.tar', '.gz'}),
    ),
}


@dataclass
class Upload:
    """An incoming file as handed over by the HTTP layer."""
    filename: str
    mimetype: str
    stream: BinaryIO
    size: Optional[int] = None


@dataclass(frozen=True)
class StoredAsset:
    """Result of a successful :meth:`AssetRepository.store` call."""
    kind: str
    name: str
    url: str
    original_name: str
    size_bytes: int
    extension: str


def file_extension(filename: str) -> str:
    """Return the lower-cased final extension of *filename* (``''`` if none)."""
    return os.path.splitext(os.path.basename(filename or ''))[1].lower()


class AssetRepository:
    """Stores assets on local disk, one directory per kind.

    Payloads are streamed into a hidden temporary file inside the kind's
    directory and only renamed to their generated name once the whole payload
    is within the size ceiling, so a rejected or failed upload never becomes
    addressable.
    """

    CHUNK_SIZE = 64 * 1024

    def __init__(self, base_url: str, image_dir: str, game_dir: str,
                 max_image_size: int = DEFAULT_MAX_IMAGE_SIZE,
                 max_file_size: int = DEFAULT_MAX_FILE_SIZE) -> None:
        self._base_url = base_url.rstrip('/')
        self._dirs = {
            KIND_IMAGE: os.path.abspath(image_dir),
            KIND_GAME_FILE: os.path.abspath(game_dir),
        }
        self._limits = {
            KIND_IMAGE: int(max_image_size),
            KIND_GAME_FILE: int(max_file_size),
        }
        self._log = logging.getLogger('gameshare.assets')

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def ensure_directories(self) -> None:
        """Create the storage directories if they do not exist yet."""
        for directory in self._dirs.values():
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as exc:
                self._log.error("Could not create upload directory %s: %s", directory, exc)
                raise StorageFailure() from exc

    def size_limit(self, kind: str) -> int:
        return self._limits[self._kind(kind).name]

    # ------------------------------------------------------------------
    # Store / delete
    # ------------------------------------------------------------------

    def validate(self, kind: str, original_name: str, mime_type: Optional[str],
                 size_bytes: Optional[int] = None) -> str:
        """Check type and declared size without touching the disk.

        Returns:
            The lower-cased extension of *original_name*.

        Raises:
            InvalidAssetType: unknown kind, extension or image MIME type.
            AssetTooLarge:    declared size is over the kind's ceiling.
        """
        spec = self._kind(kind)
        ext = file_extension(original_name)
        if ext not in spec.extensions:
            raise InvalidAssetType(self._type_message(spec))
        if spec.mime_types is not None and (mime_type or '').lower() not in spec.mime_types:
            raise InvalidAssetType(self._type_message(spec))
        if size_bytes is not None and size_bytes > self._limits[spec.name]:
            raise AssetTooLarge(self._size_message(spec))
        return ext

    def store(self, kind: str, original_name: str, mime_type: Optional[str],
              size_bytes: Optional[int], stream: BinaryIO) -> StoredAsset:
        """Validate and persist one asset.

        Args:
            kind:          ``'image'`` or ``'game-file'``.
            original_name: Client-side file name; only its extension is kept.
            mime_type:     Declared MIME type (checked for images only).
            size_bytes:    Declared size, or ``None`` when unknown.
            stream:        Readable binary stream with the payload.

        Returns:
            :class:`StoredAsset` describing the written file.
        """
        ext = self.validate(kind, original_name, mime_type, size_bytes)
        spec = self._kind(kind)
        directory = self._dirs[spec.name]
        limit = self._limits[spec.name]

        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.upload-', suffix='.part')
        except OSError as exc:
            self._log.error("Could not open temp file in %s: %s", directory, exc)
            raise StorageFailure() from exc

        written = 0
        try:
            with os.fdopen(fd, 'wb') as fh:
                while True:
                    chunk = stream.read(self.CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > limit:
                        raise AssetTooLarge(self._size_message(spec))
                    fh.write(chunk)
            name = self._generate_name(spec, ext)
            os.replace(tmp_path, os.path.join(directory, name))
        except AssetTooLarge:
            self._discard(tmp_path)
            raise
        except OSError as exc:
            self._discard(tmp_path)
            self._log.error("Writing %s asset %r failed: %s", spec.name, original_name, exc)
            raise StorageFailure() from exc
        except Exception:
            self._discard(tmp_path)
            raise

        self._log.info("Stored %s asset %s (%d bytes)", spec.name, name, written)
        return StoredAsset(
            kind=spec.name,
            name=name,
            url=self.url_for(spec.name, name),
            original_name=original_name,
            size_bytes=written,
            extension=ext,
        )

    def delete(self, ref: str) -> bool:
        """Remove the asset behind *ref*.

        Returns:
            ``True`` if a file was removed; ``False`` if the reference is
            unknown or the file is already gone.
        """
        path = self.path_for(ref)
        if path is None:
            return False
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            self._log.error("Could not delete asset %s: %s", path, exc)
            raise StorageFailure() from exc
        self._log.info("Deleted asset %s", path)
        return True

    # ------------------------------------------------------------------
    # Reference helpers
    # ------------------------------------------------------------------

    def url_for(self, kind: str, name: str) -> str:
        return f"{self._base_url}/uploads/{self._kind(kind).namespace}/{name}"

    def resolve(self, namespace: str, name: str) -> Optional[str]:
        """Map a ``(namespace, name)`` pair from a URL to a directory path.

        Returns the directory holding the asset, or ``None`` when the namespace
        is unknown or *name* is not a plain generated file name.
        """
        for kind, spec in ASSET_KINDS.items():
            if spec.namespace == namespace:
                if not name or secure_filename(name) != name or name.startswith('.'):
                    return None
                return self._dirs[kind]
        return None

    def path_for(self, ref: str) -> Optional[str]:
        """Return the on-disk path for *ref*, or ``None`` if it is not ours."""
        if not ref:
            return None
        parts = [p for p in urlparse(ref).path.split('/') if p]
        if len(parts) < 3 or parts[-3] != 'uploads':
            return None
        directory = self.resolve(parts[-2], parts[-1])
        if directory is None:
            return None
        return os.path.join(directory, parts[-1])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _kind(self, kind: str) -> AssetKind:
        spec = ASSET_KINDS.get(kind)
        if spec is None:
            raise InvalidAssetType(f"Unknown asset kind: {kind!r}")
        return spec

    def _generate_name(self, spec: AssetKind, ext: str) -> str:
        directory = self._dirs[spec.name]
        while True:
            name = f"{spec.prefix}-{int(time.time() * 1000)}-{random.randint(0, 999999999)}{ext}"
            if not os.path.exists(os.path.join(directory, name)):
                return name

    def _discard(self, tmp_path: str) -> None:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass

    @staticmethod
    def _type_message(spec: AssetKind) -> str:
        if spec.name == KIND_IMAGE:
            return 'Only image files are allowed!'
        return 'Only game files (zip, rar, exe, etc.) are allowed!'

    def _size_message(self, spec: AssetKind) -> str:
        limit_mb = self._limits[spec.name] / (1024 * 1024)
        return f"{spec.prefix.capitalize()} file exceeds the {limit_mb:g} MB limit"
