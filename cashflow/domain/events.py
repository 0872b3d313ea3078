from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

from django.db import models
from django.utils import timezone


class EventKind(models.TextChoices):
    ASSIGNMENT_CREATED = "assignment_created", "Assignment created"
    RETURN_REQUESTED = "return_requested", "Return requested"
    RETURN_APPROVED = "return_approved", "Return approved"
    RETURN_REJECTED = "return_rejected", "Return rejected"
    BALANCE_CHANGED = "balance_changed", "Balance changed"


@dataclass(frozen=True)
class NotificationEvent:
    """
    A change worth telling a holder about.

    Consumers may see the same event more than once and should deduplicate
    on ``event_id``.
    """

    recipient_id: str
    kind: str
    subject_id: UUID
    event_id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=timezone.now)
