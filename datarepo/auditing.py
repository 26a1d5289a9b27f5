"""
Auditing interceptor for datarepo.

Stamps audit metadata on entities whose type is flagged ``audited``:

- on_before_create: created_at, created_by, last_modified_at, last_modified_by
- on_before_update: last_modified_at, last_modified_by

Timestamps are Unix milliseconds from an injectable clock. The actor comes
from an ActorResolver; the default resolver reads ``tx.actor``.

Invariants:
    - created_at / created_by are written once, at insert
    - A resolver returning None, or raising, yields the default actor
    - Entity types that are not audited are never touched
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from .schema.types import EntityType

if TYPE_CHECKING:
    from .config import RepositorySettings
    from .session import TransactionContext

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def current_time_ms() -> int:
    return int(time.time() * 1000)


class ActorResolver(Protocol):
    """Supplies the actor recorded in audit fields."""

    def current_actor(self, tx: TransactionContext) -> Optional[str]: ...


class ContextActorResolver:
    """Reads the actor the transaction was opened with."""

    def current_actor(self, tx: TransactionContext) -> Optional[str]:
        return getattr(tx, "actor", None)


class AuditingInterceptor:
    """Stamps creation and modification metadata.

    Example:
        >>> auditing = AuditingInterceptor(clock=lambda: 1_700_000_000_000)
        >>> with store.transaction(registry, auditing=auditing, actor="admin") as tx:
        ...     members.save(tx, Member(username="member1"))
    """

    def __init__(
        self,
        actor_resolver: Optional[ActorResolver] = None,
        clock: Optional[Clock] = None,
        default_actor: str = "unknown",
    ) -> None:
        """Initialize the interceptor.

        Args:
            actor_resolver: Actor source (defaults to ContextActorResolver)
            clock: Returns the current time in Unix milliseconds
            default_actor: Actor recorded when none can be resolved
        """
        self.actor_resolver = actor_resolver or ContextActorResolver()
        self.clock = clock or current_time_ms
        self.default_actor = default_actor

    @classmethod
    def from_settings(
        cls,
        settings: RepositorySettings,
        actor_resolver: Optional[ActorResolver] = None,
        clock: Optional[Clock] = None,
    ) -> AuditingInterceptor:
        return cls(actor_resolver, clock, default_actor=settings.audit_default_actor)

    def resolve_actor(self, tx: TransactionContext) -> str:
        try:
            actor = self.actor_resolver.current_actor(tx)
        except Exception as e:
            logger.warning(
                f"Actor resolution failed, using '{self.default_actor}': {e}",
                extra={"resolver": type(self.actor_resolver).__name__},
            )
            return self.default_actor
        return self.default_actor if actor is None else actor

    def on_before_create(self, tx: TransactionContext, entity_type: EntityType, entity: Any) -> None:
        if not entity_type.audited:
            return
        names = entity_type.audit_names
        now = self.clock()
        actor = self.resolve_actor(tx)
        setattr(entity, names.created_at, now)
        setattr(entity, names.created_by, actor)
        setattr(entity, names.last_modified_at, now)
        setattr(entity, names.last_modified_by, actor)

    def on_before_update(self, tx: TransactionContext, entity_type: EntityType, entity: Any) -> None:
        if not entity_type.audited:
            return
        names = entity_type.audit_names
        setattr(entity, names.last_modified_at, self.clock())
        setattr(entity, names.last_modified_by, self.resolve_actor(tx))
