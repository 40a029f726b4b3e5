from __future__ import annotations


class MappingEngineError(Exception):
    pass


class ValidationError(MappingEngineError):
    """Bad caller input. Raised before anything is read or written."""


class NotFoundError(MappingEngineError):
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvariantViolation(MappingEngineError):
    """Store data or store contract is corrupt. Never retried."""


class RetryableError(MappingEngineError):
    """Transient store I/O failure. Retry policy belongs to the caller."""
