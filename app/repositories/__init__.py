"""Repository package: expose all concrete repositories from one import."""
from .asset_repository import AssetRepository, StoredAsset, Upload

__all__ = [
    'AssetRepository',
    'StoredAsset',
    'Upload',
]
