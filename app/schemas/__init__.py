"""
Pydantic Schemas
================

Request/response schemas for API validation and the values passed
between entitlement components.
"""

from app.schemas.common import (
    BaseResponse,
    ErrorResponse,
)

__all__ = [
    "BaseResponse",
    "ErrorResponse",
]
