"""Business logic for counting downloads."""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..errors import NotFound, PersistenceFailure


@dataclass(frozen=True)
class DownloadTicket:
    """What the client needs to fetch the bytes from the static responder."""
    download_url: str
    file_name: str

    def to_dict(self) -> dict:
        return {'downloadUrl': self.download_url, 'fileName': self.file_name}


class DownloadService:
    """Authorizes a download and records it.

    The service never streams bytes itself; it hands back the asset URL and
    the original file name.  The counter is best-effort telemetry.
    """

    def __init__(self, db_module) -> None:
        self._db = db_module
        self._log = logging.getLogger('gameshare.service.DownloadService')

    def record(self, db, game_id: str, downloader_id: Optional[str] = None,
               ip_address: Optional[str] = None) -> DownloadTicket:
        """Count one download of *game_id*.

        A history row is written only when the downloader or their address is
        known; the counter always goes up by one.

        Raises:
            NotFound: the entry does not exist or is not active.
        """
        game = self._db.get_game(db, game_id)
        if game is None or not game.is_active:
            raise NotFound('Game not found')
        ticket = DownloadTicket(download_url=game.file_url, file_name=game.file_name)
        try:
            self._db.record_download(db, game, user_id=downloader_id, ip_address=ip_address)
        except SQLAlchemyError as exc:
            self._log.error("Recording download of %s failed: %s", game_id, exc)
            raise PersistenceFailure() from exc
        self._log.debug("Download of %s by %s from %s", game_id, downloader_id, ip_address)
        return ticket
