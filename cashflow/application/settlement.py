"""
Settlement Coordinator — moves the money for an approved return request.

Core guarantees provided:

- Atomicity: debit, credit and mark-returned run in one transaction.atomic()
  block; if any step fails none of them is visible.
- Re-validation: the requester's balance is checked again under lock, since
  it may have changed between request creation and approval.
- Idempotency: the debit and credit use the keys "<request_id>:debit" and
  "<request_id>:credit". A settlement whose debit already exists is reported
  as a replay and moves nothing.
- Persistence failures roll the whole unit back and surface as
  SettlementFailed for the caller to retry.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

from django.db import DatabaseError, transaction

from cashflow.application import accounts, ledger
from cashflow.domain.exceptions import InsufficientFunds, SettlementFailed
from cashflow.models import Assignment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    request_id: UUID
    requester_balance: Decimal
    custodian_balance: Decimal
    returned_assignment_id: Optional[UUID] = None
    replayed: bool = False


def debit_key(request_id):
    return f"{request_id}:debit"


def credit_key(request_id):
    return f"{request_id}:credit"


def settle(request):
    """
    Debit the requester, credit the custodian and close a covering assignment.

    ``request`` is a ReturnRequest. Its status is not touched here; the
    workflow flips it in the same transaction once this returns.
    """
    try:
        with transaction.atomic():
            return _settle(request)
    except DatabaseError as exc:
        logger.error(
            "Settlement rolled back: request=%s error=%s",
            request.id, exc,
        )
        raise SettlementFailed(request.id) from exc


def _settle(request):
    requester_id = request.requester_id
    custodian_id = request.custodian_id

    locked = accounts.lock_accounts([requester_id, custodian_id])

    if accounts.has_applied(debit_key(request.id)):
        logger.info("Settlement replay: request=%s", request.id)
        returned_id = (
            Assignment.objects
            .filter(settlement_ref_id=request.id)
            .values_list("id", flat=True)
            .first()
        )
        return SettlementResult(
            request_id=request.id,
            requester_balance=locked[requester_id].balance,
            custodian_balance=locked[custodian_id].balance,
            returned_assignment_id=returned_id,
            replayed=True,
        )

    available = locked[requester_id].balance
    if available < request.amount:
        logger.warning(
            "Balance changed since request: request=%s requester=%s requested=%s available=%s",
            request.id, requester_id, request.amount, available,
        )
        raise InsufficientFunds(requester_id, request.amount, available)

    requester_balance = accounts.apply_delta(requester_id, -request.amount, debit_key(request.id))
    custodian_balance = accounts.apply_delta(custodian_id, request.amount, credit_key(request.id))

    # FIFO: the oldest outstanding assignment large enough to cover the return
    returned_id = None
    assignment = ledger.oldest_covering_assignment(custodian_id, requester_id, request.amount)
    if assignment is not None:
        ledger.mark_returned(assignment.id, request)
        returned_id = assignment.id

    logger.info(
        "Settled: request=%s requester=%s custodian=%s amount=%s assignment=%s",
        request.id, requester_id, custodian_id, request.amount, returned_id,
    )
    return SettlementResult(
        request_id=request.id,
        requester_balance=requester_balance,
        custodian_balance=custodian_balance,
        returned_assignment_id=returned_id,
    )
