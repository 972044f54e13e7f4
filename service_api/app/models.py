"""
Request and response models for the API service.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """Marketplace roles carried in the access token."""
    EXPLORER = "customer"
    AS = "provider"
    ADMIN = "admin"


class ServiceCreate(BaseModel):
    """Payload for publishing a service."""
    title: str = Field(min_length=3, max_length=200)
    description: str = Field(min_length=10, max_length=5000)
    category_id: int
    price: Decimal = Field(ge=0)
    duration_minutes: int = Field(default=60, gt=0)
    location: Optional[str] = None


class ServiceUpdate(BaseModel):
    """Partial update for a published service."""
    title: Optional[str] = Field(default=None, min_length=3, max_length=200)
    description: Optional[str] = Field(default=None, min_length=10, max_length=5000)
    category_id: Optional[int] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    location: Optional[str] = None
    is_active: Optional[bool] = None


class ExplorerStats(BaseModel):
    activeBookings: int = 0
    completedBookings: int = 0
    totalSpent: float = 0.0
    favoriteServices: int = 0
    unreadMessages: int = 0


class ASStats(BaseModel):
    totalServices: int = 0
    activeServices: int = 0
    pendingRequests: int = 0
    completedBookings: int = 0
    totalEarnings: float = 0.0
    averageRating: float = 0.0
    totalReviews: int = 0
    profileCompletion: int = 0
