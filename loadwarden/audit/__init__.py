"""Frontend asset audit."""

from .assets import AssetAudit, AssetRecord, attribute_asset

__all__ = ["AssetAudit", "AssetRecord", "attribute_asset"]
