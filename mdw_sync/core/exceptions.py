"""
Custom exception classes for the sync engine.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class MdwSyncException(Exception):
    """Base exception class for the sync engine."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(MdwSyncException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(MdwSyncException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class MiddlewareError(MdwSyncException):
    """Raised when the middleware API or its push channel fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "MIDDLEWARE_ERROR", details)


class IndexerError(MdwSyncException):
    """Raised when there's an indexer error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INDEXER_ERROR", details)


class ReorgError(IndexerError):
    """Raised when reorg recovery cannot be applied."""

    def __init__(self, height: int, reason: str):
        super().__init__(
            f"Reorg recovery failed at height {height}: {reason}",
            {"height": height, "reason": reason}
        )


class PluginError(MdwSyncException):
    """Raised when a plugin cannot be loaded or run."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PLUGIN_ERROR", details)


class ValidationError(MdwSyncException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(MdwSyncException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class PluginNotFoundError(NotFoundError):
    """Raised when a plugin is not registered."""

    def __init__(self, plugin_name: str):
        super().__init__(
            f"Plugin not found: {plugin_name}",
            {"plugin_name": plugin_name}
        )


class FailedTransactionNotFoundError(NotFoundError):
    """Raised when a dead-letter row does not exist."""

    def __init__(self, plugin_name: str, tx_hash: str):
        super().__init__(
            f"Failed transaction not found: {plugin_name}/{tx_hash}",
            {"plugin_name": plugin_name, "tx_hash": tx_hash}
        )
