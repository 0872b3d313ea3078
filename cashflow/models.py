"""
Persistence Models — Cashflow Domain (Django ORM)

This module defines the persistence layer for custodial cash: money a
custodian (cashier) hands to a holder, and the holder's requests to give it
back.

Key architectural decisions:

- Account is the single running balance per holder. Only
  cashflow.application.accounts.apply_delta writes to it.
- BalanceMovement records every applied delta. Idempotency is enforced at
  the database level via a UNIQUE constraint on idempotency_key, so a
  retried settlement can never move funds twice.
- Assignment and ReturnRequest are audit records. Their state flags
  (is_returned, status) only ever move forward and are written with
  conditional UPDATEs so that two writers cannot both win.
- Notification is both the persisted change event and the holder's inbox.

Holder and custodian ids are opaque strings owned by an external identity
service, so they are stored as plain columns rather than foreign keys.
"""

import uuid
from decimal import Decimal

from django.db import models
from django.utils import timezone

from cashflow.domain.events import EventKind

HOLDER_ID_LENGTH = 64


class Account(models.Model):
    """
    One running balance per holder.

    balance is never mutated by a pending request; it moves only when an
    assignment is made or a return request is settled.
    """

    holder_id = models.CharField(max_length=HOLDER_ID_LENGTH, unique=True)

    balance = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=Decimal("0.00"),
    )

    updated_at = models.DateTimeField(default=timezone.now)

    def __str__(self):
        return f"Account {self.holder_id} - Balance: {self.balance}"


class BalanceMovement(models.Model):
    """
    A single applied balance delta.

    - idempotency_key is UNIQUE at the database level to prevent
      duplicate application under retries.
    - balance_after keeps the running balance for auditing.
    """

    account = models.ForeignKey(
        Account,
        on_delete=models.CASCADE,
        related_name="movements",
    )

    delta = models.DecimalField(max_digits=14, decimal_places=2)

    balance_after = models.DecimalField(max_digits=14, decimal_places=2)

    # Unique constraint enforces idempotency at the persistence layer.
    idempotency_key = models.CharField(
        max_length=100,
        unique=True,
    )

    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Movement {self.idempotency_key} - {self.delta}"


class ReturnStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"


class ReturnRequest(models.Model):
    """
    A holder's request to hand cash back to their custodian.

    Starts pending and is decided exactly once. Requests are never deleted;
    they are the audit trail of every return.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    requester_id = models.CharField(max_length=HOLDER_ID_LENGTH, db_index=True)

    custodian_id = models.CharField(max_length=HOLDER_ID_LENGTH, db_index=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2)

    status = models.CharField(
        max_length=16,
        choices=ReturnStatus.choices,
        default=ReturnStatus.PENDING,
        db_index=True,
    )

    requested_at = models.DateTimeField(default=timezone.now)

    decided_at = models.DateTimeField(null=True, blank=True)

    decided_by = models.CharField(max_length=HOLDER_ID_LENGTH, null=True, blank=True)

    rejection_reason = models.TextField(null=True, blank=True)

    class Meta:
        ordering = ["-requested_at", "-id"]

    @property
    def is_pending(self):
        return self.status == ReturnStatus.PENDING

    def __str__(self):
        return f"ReturnRequest {self.id} - {self.amount} ({self.status})"


class Assignment(models.Model):
    """
    Cash handed from a custodian to a recipient.

    Immutable once created except for the return flags, which flip exactly
    once when an approved return request settles against it.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    custodian_id = models.CharField(max_length=HOLDER_ID_LENGTH, db_index=True)

    recipient_id = models.CharField(max_length=HOLDER_ID_LENGTH, db_index=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2)

    assigned_at = models.DateTimeField(default=timezone.now)

    is_returned = models.BooleanField(default=False)

    returned_at = models.DateTimeField(null=True, blank=True)

    settlement_ref = models.ForeignKey(
        ReturnRequest,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="settled_assignments",
    )

    class Meta:
        ordering = ["-assigned_at", "-id"]

    def __str__(self):
        state = "returned" if self.is_returned else "active"
        return f"Assignment {self.id} - {self.amount} ({state})"


class Notification(models.Model):
    """
    A persisted change event, doubling as the recipient's inbox entry.

    The primary key is the event id, so delivering the same event twice
    cannot create two inbox rows.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    recipient_id = models.CharField(max_length=HOLDER_ID_LENGTH, db_index=True)

    kind = models.CharField(max_length=32, choices=EventKind.choices)

    subject_id = models.UUIDField()

    title = models.CharField(max_length=200)

    message = models.TextField()

    is_read = models.BooleanField(default=False)

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"Notification {self.id} - {self.kind} for {self.recipient_id}"
