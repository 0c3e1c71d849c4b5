"""
Sync routes for monitoring the engine and managing plugins.

Provides endpoints for:
- Sync health and progress
- Plugin version-upgrade backfill
- Plugin dead-letter inspection and replay
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

import structlog

from mdw_sync.api.dependencies import get_pagination_params, get_sync_engine
from mdw_sync.api.schemas.common import (
    FailedTransactionListResponse,
    FailedTransactionSchema,
    PaginationParams,
    SuccessResponse,
    create_success_response,
)
from mdw_sync.core.config import settings
from mdw_sync.core.exceptions import NotFoundError
from mdw_sync.indexer.main import IndexerMain
from mdw_sync.plugins.base import Plugin


logger = structlog.get_logger(__name__)

router = APIRouter()


def _not_found(e: NotFoundError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": e.code, "message": e.message, **e.details}
    )


async def _run_plugin_update(plugin: Plugin, batch_size: int):
    try:
        await plugin.update_transactions(batch_size)
    except Exception as e:
        logger.error("Plugin update failed", plugin=plugin.name, error=str(e))


@router.get(
    "/health",
    response_model=SuccessResponse,
    summary="Sync Health",
    description="Backward/live progress, lag, plugin states and dead-letter counts"
)
async def get_sync_health(engine: IndexerMain = Depends(get_sync_engine)):
    try:
        health = await engine.sync_health.get_health()
        return create_success_response(health)

    except Exception as e:
        logger.error("Failed to get sync health", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get sync health: {str(e)}"
        )


@router.post(
    "/plugins/{plugin_name}/update",
    response_model=SuccessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Plugin Update",
    description="Reprocess stored transactions whose decoded data is from an older plugin version"
)
async def trigger_plugin_update(
    plugin_name: str,
    background_tasks: BackgroundTasks,
    engine: IndexerMain = Depends(get_sync_engine),
):
    try:
        plugin = engine.registry.require_plugin(plugin_name)
    except NotFoundError as e:
        raise _not_found(e)

    background_tasks.add_task(_run_plugin_update, plugin, settings.plugin_batch_size)
    logger.info("Plugin update triggered via API", plugin=plugin_name)

    return create_success_response(
        {"plugin_name": plugin.name, "version": plugin.version},
        message="Plugin update started"
    )


@router.get(
    "/plugins/{plugin_name}/failed-transactions",
    response_model=FailedTransactionListResponse,
    summary="Plugin Failed Transactions",
    description="List transactions the plugin failed to process"
)
async def list_failed_transactions(
    plugin_name: str,
    pagination: PaginationParams = Depends(get_pagination_params),
    engine: IndexerMain = Depends(get_sync_engine),
):
    try:
        engine.registry.require_plugin(plugin_name)
    except NotFoundError as e:
        raise _not_found(e)

    rows = await engine.failed_transactions.get_failed_transactions(
        plugin_name,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    counts = await engine.failed_transactions.count_failed_transactions()
    total = counts.get(plugin_name, 0)

    return FailedTransactionListResponse(
        data=[FailedTransactionSchema.model_validate(row) for row in rows],
        pagination={
            "total": total,
            "limit": pagination.limit,
            "offset": pagination.offset,
            "has_next": pagination.offset + pagination.limit < total,
            "has_previous": pagination.offset > 0
        }
    )


@router.post(
    "/plugins/{plugin_name}/failed-transactions/{tx_hash}/retry",
    response_model=SuccessResponse,
    summary="Retry Failed Transaction",
    description="Replay one failed transaction at the plugin's current version"
)
async def retry_failed_transaction(
    plugin_name: str,
    tx_hash: str,
    engine: IndexerMain = Depends(get_sync_engine),
):
    try:
        succeeded = await engine.failed_transactions.retry_failed_transaction(plugin_name, tx_hash)
    except NotFoundError as e:
        raise _not_found(e)

    return create_success_response(
        {"plugin_name": plugin_name, "tx_hash": tx_hash, "succeeded": succeeded},
        message="Retry succeeded" if succeeded else "Retry failed"
    )
