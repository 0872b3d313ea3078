"""
Assignment Ledger — records of cash a custodian handed to a recipient.

Assignments are immutable once created. The only later write is
mark_returned(), a compare-and-set on is_returned that succeeds exactly
once; a second attempt raises AlreadyReturned so double settlement surfaces
instead of passing silently.
"""

import logging

from django.db import transaction
from django.utils import timezone

from cashflow.application import accounts
from cashflow.application.notifier import emit
from cashflow.domain.events import EventKind
from cashflow.domain.exceptions import AlreadyReturned, InsufficientFunds, NotFound
from cashflow.domain.money import parse_amount
from cashflow.models import Assignment

logger = logging.getLogger(__name__)


def create_assignment(custodian_id, recipient_id, amount):
    amount = parse_amount(amount)
    assignment = Assignment.objects.create(
        custodian_id=custodian_id,
        recipient_id=recipient_id,
        amount=amount,
    )
    logger.info(
        "Assignment created: id=%s custodian=%s recipient=%s amount=%s",
        assignment.id, custodian_id, recipient_id, amount,
    )
    return assignment


def mark_returned(assignment_id, settlement_ref):
    """
    Flag an assignment as returned by the ReturnRequest ``settlement_ref``.

    Raises NotFound for an unknown id and AlreadyReturned if it was already
    flagged.
    """
    settlement_ref_id = getattr(settlement_ref, "pk", settlement_ref)

    updated = (
        Assignment.objects
        .filter(pk=assignment_id, is_returned=False)
        .update(
            is_returned=True,
            returned_at=timezone.now(),
            settlement_ref_id=settlement_ref_id,
        )
    )
    if not updated:
        if Assignment.objects.filter(pk=assignment_id).exists():
            logger.warning(
                "Assignment already returned: id=%s settlement=%s",
                assignment_id, settlement_ref_id,
            )
            raise AlreadyReturned(assignment_id)
        raise NotFound("Assignment", assignment_id)

    logger.info(
        "Assignment returned: id=%s settlement=%s",
        assignment_id, settlement_ref_id,
    )
    return Assignment.objects.get(pk=assignment_id)


def list_for_custodian(custodian_id):
    return Assignment.objects.filter(custodian_id=custodian_id).order_by("-assigned_at", "-id")


def list_for_recipient(recipient_id):
    return Assignment.objects.filter(recipient_id=recipient_id).order_by("-assigned_at", "-id")


def oldest_covering_assignment(custodian_id, recipient_id, amount):
    """
    Oldest unreturned assignment from ``custodian_id`` to ``recipient_id`` of at least ``amount``.

    The row is locked, so this must run inside a transaction.
    """
    return (
        Assignment.objects
        .select_for_update()
        .filter(
            custodian_id=custodian_id,
            recipient_id=recipient_id,
            is_returned=False,
            amount__gte=amount,
        )
        .order_by("assigned_at", "id")
        .first()
    )


def original_custodian_for(recipient_id):
    """Custodian of the recipient's oldest outstanding assignment, or None."""
    return (
        Assignment.objects
        .filter(recipient_id=recipient_id, is_returned=False)
        .order_by("assigned_at", "id")
        .values_list("custodian_id", flat=True)
        .first()
    )


def assign_funds(custodian_id, recipient_id, amount, fund_from_custodian=True, notifier=None):
    """
    Hand ``amount`` from a custodian to a recipient as one atomic unit.

    Records the assignment and credits the recipient. When
    ``fund_from_custodian`` is true the custodian is debited as well and
    InsufficientFunds is raised if they cannot cover it; administrators
    topping up from outside the system pass False.
    """
    amount = parse_amount(amount)

    with transaction.atomic():
        locked = accounts.lock_accounts([custodian_id, recipient_id])

        available = locked[custodian_id].balance
        if fund_from_custodian and available < amount:
            logger.warning(
                "Insufficient custodian funds: custodian=%s requested=%s available=%s",
                custodian_id, amount, available,
            )
            raise InsufficientFunds(custodian_id, amount, available)

        assignment = create_assignment(custodian_id, recipient_id, amount)

        custodian_balance = None
        if fund_from_custodian:
            custodian_balance = accounts.apply_delta(
                custodian_id, -amount, f"assignment:{assignment.id}:debit",
            )
        recipient_balance = accounts.apply_delta(
            recipient_id, amount, f"assignment:{assignment.id}:credit",
        )

        emit(
            recipient_id,
            EventKind.ASSIGNMENT_CREATED,
            assignment.id,
            "Money Assigned",
            f"{amount} has been assigned to you by {custodian_id}.",
            notifier,
        )
        emit(
            recipient_id,
            EventKind.BALANCE_CHANGED,
            assignment.id,
            "Balance Updated",
            f"{amount} has been added to your account. New balance: {recipient_balance}",
            notifier,
        )
        if custodian_balance is not None:
            emit(
                custodian_id,
                EventKind.BALANCE_CHANGED,
                assignment.id,
                "Balance Updated",
                f"{amount} was handed to {recipient_id}. New balance: {custodian_balance}",
                notifier,
            )

    return assignment
