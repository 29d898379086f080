"""Pydantic schemas for API request/response models."""

from pcbcrm.schemas.base import CamelModel
from pcbcrm.schemas.pagination import PageResponse

__all__ = [
    "CamelModel",
    "PageResponse",
]
