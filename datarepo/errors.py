"""
Error types for datarepo.

This module defines every exception raised by the library:
- DataRepoError: Base exception
- Registry errors: UnknownEntityError, DuplicateRegistrationError, RegistryFrozenError
- Query errors: UnknownFieldError, UnsupportedComparatorError, ArityMismatchError,
  QueryDefinitionError, NonUniqueResultError
- Paging errors: InvalidPageRequestError, InvalidPageSizeError
- Transaction errors: TransactionError, LockTimeoutError, DetachedReferenceError,
  TransientReferenceError

Invariants:
    - All errors inherit from DataRepoError
    - Errors include context for debugging (code + details)
    - Nothing here is retried automatically
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DataRepoError(Exception):
    """Base exception for all datarepo errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DATAREPO_ERROR"
        self.details = details or {}


class UnknownEntityError(DataRepoError):
    """Entity type is not registered."""

    def __init__(self, entity: str) -> None:
        super().__init__(
            f"Unknown entity '{entity}'",
            code="UNKNOWN_ENTITY",
            details={"entity": entity},
        )
        self.entity = entity


class DuplicateRegistrationError(DataRepoError):
    """Raised when attempting to register an entity name, class or table twice."""

    def __init__(self, message: str, entity: Optional[str] = None) -> None:
        super().__init__(message, code="DUPLICATE_REGISTRATION", details={"entity": entity})
        self.entity = entity


class RegistryFrozenError(DataRepoError):
    """Raised when attempting to modify a frozen registry."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="REGISTRY_FROZEN")


class UnknownFieldError(DataRepoError):
    """Field path does not exist on the entity.

    Includes suggestions for similar field names.

    Attributes:
        field_name: The unknown field or path
        entity: The entity being queried
        suggestions: Similar field names
    """

    def __init__(
        self,
        field_name: str,
        entity: str,
        suggestions: Optional[List[str]] = None,
    ) -> None:
        suggestions = suggestions or []
        msg = f"Unknown field '{field_name}' on entity '{entity}'"
        if suggestions:
            msg += f". Did you mean: {', '.join(suggestions)}?"

        super().__init__(
            msg,
            code="UNKNOWN_FIELD",
            details={
                "field_name": field_name,
                "entity": entity,
                "suggestions": suggestions,
            },
        )
        self.field_name = field_name
        self.entity = entity
        self.suggestions = suggestions


class UnsupportedComparatorError(DataRepoError):
    """Comparator cannot be applied to the field's declared kind."""

    def __init__(self, comparator: str, field_name: str, kind: str) -> None:
        super().__init__(
            f"Comparator {comparator} is not supported for field '{field_name}' of kind {kind}",
            code="UNSUPPORTED_COMPARATOR",
            details={"comparator": comparator, "field_name": field_name, "kind": kind},
        )
        self.comparator = comparator
        self.field_name = field_name
        self.kind = kind


class ArityMismatchError(DataRepoError):
    """Bound arguments do not match the query's placeholders."""

    def __init__(self, message: str, expected: Any, actual: Any) -> None:
        super().__init__(
            message,
            code="ARITY_MISMATCH",
            details={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class QueryDefinitionError(DataRepoError):
    """A derived query name or clause list cannot be parsed."""

    def __init__(self, message: str, definition: Optional[str] = None) -> None:
        super().__init__(message, code="QUERY_DEFINITION", details={"definition": definition})
        self.definition = definition


class NonUniqueResultError(DataRepoError):
    """A single-result query matched more than one row."""

    def __init__(self, entity: str, count: int) -> None:
        super().__init__(
            f"Query for a single '{entity}' returned {count} results",
            code="NON_UNIQUE_RESULT",
            details={"entity": entity, "count": count},
        )
        self.entity = entity
        self.count = count


class InvalidPageRequestError(DataRepoError, ValueError):
    """Page index or size is out of range."""

    def __init__(self, message: str, code: str = "INVALID_PAGE_REQUEST") -> None:
        super().__init__(message, code=code)


class InvalidPageSizeError(InvalidPageRequestError):
    """Page size must be positive and within the configured maximum."""

    def __init__(self, size: int, max_size: Optional[int] = None) -> None:
        if max_size is not None and size > max_size:
            msg = f"Page size {size} exceeds maximum of {max_size}"
        else:
            msg = f"Page size must be greater than zero, got {size}"
        super().__init__(msg, code="INVALID_PAGE_SIZE")
        self.details = {"size": size, "max_size": max_size}
        self.size = size


class TransactionError(DataRepoError):
    """Transaction misuse or failure.

    Raised when:
    - Operating on a closed transaction context
    - Changing the identifier of a persistent entity
    - Saving an entity of an unexpected type
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TRANSACTION_ERROR")


class LockTimeoutError(TransactionError):
    """Pessimistic lock could not be acquired within the wait limit."""

    def __init__(self, entity: str, timeout_ms: int) -> None:
        super().__init__(f"Timed out after {timeout_ms}ms acquiring write lock on '{entity}'")
        self.code = "LOCK_TIMEOUT"
        self.details = {"entity": entity, "timeout_ms": timeout_ms}
        self.entity = entity
        self.timeout_ms = timeout_ms


class DetachedReferenceError(TransactionError):
    """Lazy reference dereferenced outside its transaction."""

    def __init__(self, entity: str, key: Any) -> None:
        super().__init__(
            f"Cannot load reference to '{entity}' ({key}): its transaction is closed"
        )
        self.code = "DETACHED_REFERENCE"
        self.details = {"entity": entity, "key": key}


class TransientReferenceError(TransactionError):
    """A relationship points at an entity that has not been saved yet."""

    def __init__(self, entity: str, relationship: str) -> None:
        super().__init__(
            f"Relationship '{relationship}' of '{entity}' references an unsaved entity"
        )
        self.code = "TRANSIENT_REFERENCE"
        self.details = {"entity": entity, "relationship": relationship}
