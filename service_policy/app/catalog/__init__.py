"""
Role and permission catalog.

A catalog document (YAML, JSON or the remote catalog service) is
validated into an immutable, versioned CatalogSnapshot that the rule
pipeline reads on the hot path.
"""

from .loader import CatalogLoader, FileCatalogSource, HttpCatalogSource, StaticCatalogSource
from .snapshot import CatalogSnapshot

__all__ = [
    "CatalogLoader",
    "CatalogSnapshot",
    "FileCatalogSource",
    "HttpCatalogSource",
    "StaticCatalogSource",
]
