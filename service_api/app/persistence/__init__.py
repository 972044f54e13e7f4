"""
Persistence layer for the API service.
"""

from .repository import MarketplaceRepository
from .postgres import PostgresMarketplaceRepository

__all__ = [
    "MarketplaceRepository",
    "PostgresMarketplaceRepository",
]
