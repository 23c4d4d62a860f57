"""Object storage backends."""

from .object_store import (
    InvalidPart,
    LocalObjectStore,
    NoSuchKey,
    NoSuchUpload,
    ObjectListing,
    ObjectStore,
    ObjectSummary,
)

__all__ = [
    "InvalidPart",
    "LocalObjectStore",
    "NoSuchKey",
    "NoSuchUpload",
    "ObjectListing",
    "ObjectStore",
    "ObjectSummary",
]
