"""
Return Request Workflow — pending → approved | rejected.

A holder asks to give cash back to their custodian; the custodian decides
once. Balances are not touched until approval, and the approval re-checks
them under lock.

Core guarantees provided:

- The request row is locked (select_for_update) for the whole decision, and
  the status write is a compare-and-set on status = pending, so two
  concurrent decisions yield exactly one success and one AlreadyDecided.
- Approval and settlement commit together. If settlement fails the request
  stays pending and the error reaches the caller.
- Notifications are emitted inside the transaction and published only
  after it commits.
- A database error during a decision is checked against a fresh read of the
  request: if another session already decided it the caller gets
  AlreadyDecided, not a retryable failure.
"""

import logging

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.utils import timezone

from cashflow.application import accounts, settlement
from cashflow.application.notifier import emit
from cashflow.domain.events import EventKind
from cashflow.domain.exceptions import (
    AlreadyDecided,
    InsufficientFunds,
    NoCustodianAssigned,
    NotAuthorized,
    NotFound,
    SettlementFailed,
)
from cashflow.domain.money import parse_amount
from cashflow.models import ReturnRequest, ReturnStatus

logger = logging.getLogger(__name__)


def create_request(requester_id, custodian_id, amount, notifier=None):
    """
    Open a pending return of ``amount`` from ``requester_id`` to ``custodian_id``.

    Raises InvalidAmount, NoCustodianAssigned or InsufficientFunds; nothing is
    persisted on failure.
    """
    amount = parse_amount(amount)

    if not custodian_id:
        logger.warning("No custodian assigned: requester=%s", requester_id)
        raise NoCustodianAssigned(requester_id)

    with transaction.atomic():
        available = accounts.get_balance(requester_id)
        if amount > available:
            logger.warning(
                "Insufficient funds for return request: requester=%s requested=%s available=%s",
                requester_id, amount, available,
            )
            raise InsufficientFunds(requester_id, amount, available)

        request = ReturnRequest.objects.create(
            requester_id=requester_id,
            custodian_id=custodian_id,
            amount=amount,
        )

        emit(
            custodian_id,
            EventKind.RETURN_REQUESTED,
            request.id,
            "Money Return Request",
            f"{requester_id} wants to return {amount} to you. Please approve or reject this request.",
            notifier,
        )

    logger.info(
        "Return requested: request=%s requester=%s custodian=%s amount=%s",
        request.id, requester_id, custodian_id, amount,
    )
    return request


def _lock_for_decision(request_id, approver_id):
    try:
        request = ReturnRequest.objects.select_for_update().get(pk=request_id)
    except (ReturnRequest.DoesNotExist, ValidationError):
        raise NotFound("ReturnRequest", request_id)

    if not request.is_pending:
        raise AlreadyDecided(request.id, request.status)

    if request.custodian_id != approver_id:
        logger.warning(
            "Unauthorized decision: request=%s actor=%s custodian=%s",
            request.id, approver_id, request.custodian_id,
        )
        raise NotAuthorized(approver_id, request.id)

    return request


def _transition(request, status, approver_id, reason=None):
    decided_at = timezone.now()

    updated = (
        ReturnRequest.objects
        .filter(pk=request.pk, status=ReturnStatus.PENDING)
        .update(
            status=status,
            decided_at=decided_at,
            decided_by=approver_id,
            rejection_reason=reason,
        )
    )
    if not updated:
        current = (
            ReturnRequest.objects
            .filter(pk=request.pk)
            .values_list("status", flat=True)
            .first()
        )
        raise AlreadyDecided(request.pk, current)

    request.status = status
    request.decided_at = decided_at
    request.decided_by = approver_id
    request.rejection_reason = reason
    return request


def _current_status(request_id):
    try:
        return (
            ReturnRequest.objects
            .filter(pk=request_id)
            .values_list("status", flat=True)
            .first()
        )
    except (DatabaseError, ValidationError):
        return None


def _raise_if_decided(request_id, exc):
    status = _current_status(request_id)
    if status is not None and status != ReturnStatus.PENDING:
        logger.info(
            "Lost decision race: request=%s status=%s error=%s",
            request_id, status, exc,
        )
        raise AlreadyDecided(request_id, status) from exc


def approve(request_id, approver_id, notifier=None):
    """
    Approve a pending request and settle it. Returns the SettlementResult.

    Raises NotFound, AlreadyDecided, NotAuthorized, InsufficientFunds (the
    requester's balance changed since the request) or SettlementFailed.
    """
    try:
        with transaction.atomic():
            request = _lock_for_decision(request_id, approver_id)
            result = settlement.settle(request)
            _transition(request, ReturnStatus.APPROVED, approver_id)

            emit(
                request.requester_id,
                EventKind.RETURN_APPROVED,
                request.id,
                "Money Return Approved",
                f"Your return request of {request.amount} has been approved by {approver_id}. "
                f"Amount deducted from your balance.",
                notifier,
            )
            emit(
                request.requester_id,
                EventKind.BALANCE_CHANGED,
                request.id,
                "Balance Updated",
                f"{request.amount} returned to {request.custodian_id}. New balance: {result.requester_balance}",
                notifier,
            )
            emit(
                request.custodian_id,
                EventKind.BALANCE_CHANGED,
                request.id,
                "Balance Updated",
                f"{request.amount} received from {request.requester_id}. New balance: {result.custodian_balance}",
                notifier,
            )
    except SettlementFailed as exc:
        _raise_if_decided(request_id, exc)
        raise
    except DatabaseError as exc:
        _raise_if_decided(request_id, exc)
        logger.error("Approval rolled back: request=%s error=%s", request_id, exc)
        raise SettlementFailed(request_id) from exc

    logger.info(
        "Return approved: request=%s approver=%s amount=%s",
        request.id, approver_id, request.amount,
    )
    return result


def reject(request_id, approver_id, reason=None, notifier=None):
    """Reject a pending request. No balance moves. Returns the updated ReturnRequest."""
    reason = (reason or "").strip() or None

    try:
        with transaction.atomic():
            request = _lock_for_decision(request_id, approver_id)
            _transition(request, ReturnStatus.REJECTED, approver_id, reason)

            message = f"Your return request of {request.amount} has been rejected by {approver_id}"
            if reason:
                message += f". Reason: {reason}"

            emit(
                request.requester_id,
                EventKind.RETURN_REJECTED,
                request.id,
                "Money Return Rejected",
                message,
                notifier,
            )
    except DatabaseError as exc:
        _raise_if_decided(request_id, exc)
        raise

    logger.info(
        "Return rejected: request=%s approver=%s reason=%s",
        request.id, approver_id, reason,
    )
    return request

