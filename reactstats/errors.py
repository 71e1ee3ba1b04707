"""Error taxonomy and correlation-id helpers."""

from __future__ import annotations

import logging
import uuid

GENERIC_FAILURE = "An error occurred while processing your request."


class ReactStatsError(Exception):
    """Base class for errors raised by this package."""


class InvalidRequestError(ReactStatsError, ValueError):
    """A request was rejected before anything was persisted."""


class StorageError(ReactStatsError):
    """A storage transaction failed and was rolled back."""


class DeliveryError(ReactStatsError):
    """The destination rejected a delivery call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def log_with_reference(logger: logging.Logger, message: str, *args: object) -> str:
    """Log the active exception under a fresh error id and return the id.

    Must be called from inside an ``except`` block so the traceback is attached.
    """
    error_id = str(uuid.uuid4())
    logger.exception("Error ID %s - " + message, error_id, *args)
    return error_id


def reference_reply(error_id: str, message: str = GENERIC_FAILURE) -> str:
    return f"{message}\n\nError Reference: `{error_id}`"
