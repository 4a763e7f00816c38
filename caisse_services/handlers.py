"""
Side-effect handlers: notices by e-mail and PDF archival.

Delivery and rendering are behind two small protocols, ``Notifier`` and
``DocumentRenderer``; this module decides who is told what, and where a
document goes.  Handlers raise on failure and let the dispatcher log it.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable
from uuid import UUID

from caisse_config.schema import NotificationSettings
from caisse_kernel.domain.dtos import DeclarationRecord
from caisse_kernel.domain.events import (
    DeclarationCreated,
    RecurrenceAlert,
    SeverityFourAlert,
    SideEffectEvent,
)
from caisse_kernel.logging_config import get_logger

logger = get_logger("services.handlers")


@dataclass(frozen=True)
class Notification:
    kind: str
    sender: str
    recipients: tuple[str, ...]
    subject: str
    declaration_ref: str
    priority: str = "normal"


@runtime_checkable
class Notifier(Protocol):
    def send(self, notification: Notification) -> None: ...


@runtime_checkable
class DocumentRenderer(Protocol):
    def render(self, declaration: DeclarationRecord, path: Path) -> None: ...


# =============================================================================
# Notifications
# =============================================================================


class NotificationHandler:
    """Builds one notice per event and hands it to the notifier."""

    name = "notification"

    def __init__(self, notifier: Notifier, settings: NotificationSettings):
        self._notifier = notifier
        self._settings = settings

    def handle(self, event: SideEffectEvent) -> None:
        notification = self.build(event)
        if notification is None:
            return
        self._notifier.send(notification)
        logger.info(
            "notification_sent",
            extra={
                "kind": notification.kind,
                "recipient_count": len(notification.recipients),
                "ref": notification.declaration_ref,
            },
        )

    def build(self, event: SideEffectEvent) -> Notification | None:
        """The notice for ``event``, or None when nobody is to be told."""
        declaration = event.declaration
        if isinstance(event, DeclarationCreated):
            urgent = "URGENT " if declaration.level >= 3 else ""
            return self._notice(
                "declaration_created",
                event.recipients,
                f"[CP] Nouvelle déclaration {urgent}- Agence "
                f"{declaration.agency_code} - Réf. {declaration.ref}",
                declaration,
            )
        if isinstance(event, SeverityFourAlert):
            return self._notice(
                "severity_four_alert",
                self._settings.severity_four_recipients,
                f"ALERTE N4 - Agence {declaration.agency_code} - "
                f"{declaration.amount_display} - {declaration.ref}",
                declaration,
                priority="high",
            )
        if isinstance(event, RecurrenceAlert):
            return self._notice(
                "recurrence_alert",
                self._settings.recurrence_recipients,
                f"Récidive - {declaration.cashier_matricule} - "
                f"Agence {declaration.agency_code}",
                declaration,
            )
        logger.debug("notification_not_applicable", extra={"event_type": event.event_type})
        return None

    def _notice(
        self,
        kind: str,
        recipients: Sequence[str],
        subject: str,
        declaration: DeclarationRecord,
        priority: str = "normal",
    ) -> Notification | None:
        recipients = tuple(address for address in recipients if address)
        if not recipients:
            logger.warning("notification_without_recipients", extra={"kind": kind})
            return None
        return Notification(
            kind=kind,
            sender=self._settings.sender,
            recipients=recipients,
            subject=subject,
            declaration_ref=declaration.ref,
            priority=priority,
        )


# =============================================================================
# Archival
# =============================================================================


def archive_path_for(root: Path, declaration: DeclarationRecord) -> Path:
    """``<root>/YYYY/MM/<ref>.pdf`` from the creation timestamp."""
    created = declaration.created_at
    return root / f"{created:%Y}" / f"{created:%m}" / f"{declaration.ref}.pdf"


class DocumentArchiveHandler:
    """
    Renders the declaration PDF under the archive root, then reports the
    path through ``on_archived`` so it can be stored on the declaration.
    """

    name = "document_archive"

    def __init__(
        self,
        renderer: DocumentRenderer,
        on_archived: Callable[[UUID, str], None],
        archive_root: Path | str = "archive",
    ):
        self._renderer = renderer
        self._on_archived = on_archived
        self._root = Path(archive_root)

    def handle(self, event: SideEffectEvent) -> None:
        declaration = event.declaration
        path = archive_path_for(self._root, declaration)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._renderer.render(declaration, path)
        self._on_archived(declaration.id, str(path))
