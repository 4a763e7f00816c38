"""
Side-effect events raised by a committed creation.

Each event carries the frozen ``DeclarationRecord`` snapshot taken at
creation.  They are published only after the transaction commits; delivery
is best-effort and never feeds back into the creation result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID, uuid4

from caisse_kernel.domain.dtos import CreationResult, DeclarationRecord


@dataclass(frozen=True)
class SideEffectEvent:
    declaration: DeclarationRecord
    event_id: UUID = field(default_factory=uuid4, kw_only=True)
    correlation_id: str | None = field(default=None, kw_only=True)

    @property
    def event_type(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class DeclarationCreated(SideEffectEvent):
    recipients: tuple[str, ...] = ()


@dataclass(frozen=True)
class SeverityFourAlert(SideEffectEvent):
    pass


@dataclass(frozen=True)
class RecurrenceAlert(SideEffectEvent):
    pass


def events_for_creation(
    result: CreationResult,
    correlation_id: str | None = None,
) -> list[SideEffectEvent]:
    """Events to publish once ``result`` is committed."""
    declaration = result.declaration
    events: list[SideEffectEvent] = [
        DeclarationCreated(
            declaration,
            recipients=result.recipients,
            correlation_id=correlation_id,
        )
    ]
    if declaration.level == 4:
        events.append(SeverityFourAlert(declaration, correlation_id=correlation_id))
    if declaration.recurrence:
        events.append(RecurrenceAlert(declaration, correlation_id=correlation_id))
    return events
