"""Services package: expose all concrete services from one import."""
from .catalog_service import CatalogPage, CatalogService
from .download_service import DownloadService, DownloadTicket
from .lifecycle_service import LifecycleService
from .review_service import ReviewService
from .user_service import Principal, UserService

__all__ = [
    'CatalogPage',
    'CatalogService',
    'DownloadService',
    'DownloadTicket',
    'LifecycleService',
    'ReviewService',
    'Principal',
    'UserService',
]
