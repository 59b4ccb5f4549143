import logging
from contextlib import contextmanager

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """
    Base class for failures reported by the catalog functions.

    Attributes:
        status_code (int): HTTP status the Flask layer answers with.
    """

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self):
        """
        Build the JSON body returned to the client.

        Returns:
            dict: Payload with an ``error`` message.
        """
        return {"error": self.message}


class ValidationError(CatalogError):
    status_code = 400


class NotFoundError(CatalogError):
    status_code = 404


class ConflictError(CatalogError):
    """
    Raised when a write collides with an existing resource.

    The existing resource travels with the error so the client can reconcile.
    """

    status_code = 409

    def __init__(self, message: str, existing: dict | None = None):
        super().__init__(message)
        self.existing = existing

    def to_payload(self):
        payload = super().to_payload()
        if self.existing is not None:
            payload["existing"] = self.existing
        return payload


class StoreError(CatalogError):
    status_code = 500


@contextmanager
def store_operation(description: str):
    """
    Convert PyMongo failures raised inside the block into StoreError.

    Args:
        description (str): Short label used in the log line and message.
    """
    try:
        yield
    except PyMongoError as exc:
        logger.error("MongoDB %s failed: %s", description, exc)
        raise StoreError(f"Store unavailable while trying to {description}") from exc
