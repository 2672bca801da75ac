"""Typed errors raised by pack stores, libraries and the job pipeline."""


class PackError(Exception):
    """Base error for the memory pack engine."""


class ValidationError(PackError, ValueError):
    """Missing or invalid caller input. Never retried."""


class NotFoundError(PackError):
    """Locator or id resolves to nothing."""


class AlreadyExistsError(PackError):
    """Target already exists (duplicate pack reference, existing file)."""


class PackStateError(PackError):
    """Operation attempted on a closed handle or a terminal job."""


class StorageError(PackError):
    """I/O or corruption failure in the backing file."""

    def __init__(self, message: str, operation: str | None = None, locator=None):
        super().__init__(message)
        self.operation = operation
        self.locator = locator

    def __str__(self) -> str:
        base = super().__str__()
        parts = []
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.locator is not None:
            parts.append(f"locator={self.locator}")
        return f"{base} ({', '.join(parts)})" if parts else base


class ExternalCapabilityError(PackError):
    """The completion capability failed or returned nothing usable."""


class InvariantError(PackError):
    """Graph invariant violated, e.g. an edge to a nonexistent node."""
