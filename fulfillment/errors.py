from __future__ import annotations


class FulfillmentError(Exception):
    """Base class for errors raised by the fulfillment pipeline."""


class ValidationError(FulfillmentError):
    pass


class StorageError(FulfillmentError):
    pass


class NotFound(FulfillmentError):
    def __init__(self, key: object, where: str = "store") -> None:
        super().__init__(f"{key!r} not found in {where}")
        self.key = key


class DuplicateKey(FulfillmentError):
    def __init__(self, key: object, where: str = "store") -> None:
        super().__init__(f"{key!r} already exists in {where}")
        self.key = key


class ProviderError(FulfillmentError):
    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ConfigError(FulfillmentError):
    pass


class QueueClosed(FulfillmentError):
    pass
