"""Core module - config, database, dependencies, exceptions."""

from app.core.config import get_settings, Settings
from app.core.database import get_db
from app.core.dependencies import get_current_user
from app.core.exceptions import (
    AppException,
    NotFoundException,
    UnauthorizedException,
    ForbiddenException,
    BadRequestException,
    ConflictException,
    InsufficientCreditsException,
    ServiceUnavailableException,
)

__all__ = [
    "get_settings",
    "Settings",
    "get_db",
    "get_current_user",
    "AppException",
    "NotFoundException",
    "UnauthorizedException",
    "ForbiddenException",
    "BadRequestException",
    "ConflictException",
    "InsufficientCreditsException",
    "ServiceUnavailableException",
]
