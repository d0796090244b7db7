"""Pulito data models."""

from pulito.models.scan_result import (
    Category,
    DuplicateGroup,
    FailedPass,
    FilesystemHealthReport,
    RiskTier,
    ScanItem,
    ScanReport,
    StorageRecoveryReport,
)
from pulito.models.trash_item import TrashItem, TrashListing, TrashMetadata
from pulito.models.clean_result import CleanResult
from pulito.models.cache_event import CacheAnalytics, CacheContributor, CacheEvent, CacheGrowthPoint
from pulito.models.package import PackageRecord

__all__ = [
    "CacheAnalytics",
    "CacheContributor",
    "CacheEvent",
    "CacheGrowthPoint",
    "Category",
    "CleanResult",
    "DuplicateGroup",
    "FailedPass",
    "FilesystemHealthReport",
    "PackageRecord",
    "RiskTier",
    "ScanItem",
    "ScanReport",
    "StorageRecoveryReport",
    "TrashItem",
    "TrashListing",
    "TrashMetadata",
]
