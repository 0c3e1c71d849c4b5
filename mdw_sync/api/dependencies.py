"""
API dependencies for FastAPI endpoints.
"""

from fastapi import HTTPException, Query, status

import structlog

from mdw_sync.api.schemas.common import PaginationParams
from mdw_sync.indexer.main import IndexerMain, get_indexer_main


logger = structlog.get_logger(__name__)


async def get_pagination_params(
    limit: int = Query(100, ge=1, le=1000, description="Number of items per page"),
    offset: int = Query(0, ge=0, description="Number of items to skip")
) -> PaginationParams:
    return PaginationParams(limit=limit, offset=offset)


async def get_sync_engine() -> IndexerMain:
    """Get the initialized sync engine, or 503 while it is unavailable."""
    engine = get_indexer_main()
    if not engine.initialized:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "SYNC_ENGINE_UNAVAILABLE",
                "message": "Sync engine is not initialized"
            }
        )
    return engine
