"""Service container for the FeedsService singleton.

Holds the global service instance to break circular import dependencies.
Pattern: main.create_app() builds the service → container stores it → API
routes receive it through ``Depends(get_feeds_service)``.

Every request must see the SAME FeedsService: the decoder registry, snapshot
buffers and motion engines live on that one instance.

Logging Strategy:
    ERROR - Service requested before initialization
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .feeds_service import FeedsService

logger = logging.getLogger(__name__)

# ============================================================================
# Global Singleton Instance
# ============================================================================

feeds_service: FeedsService | None = None
"""Global FeedsService singleton set by create_app()."""


# ============================================================================
# Dependency Injection
# ============================================================================

def get_feeds_service() -> FeedsService:
    """Get the global FeedsService for dependency injection.

    Raises:
        RuntimeError: If called before the application was created
    """
    if feeds_service is None:
        logger.error("FeedsService dependency requested before initialization")
        raise RuntimeError(
            "FeedsService not initialized. "
            "Application startup may have failed."
        )
    return feeds_service
