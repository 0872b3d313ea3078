"""
Account Store — the only writer of holder balances.

Core guarantees provided:

- Atomicity: every delta executes inside a transaction.atomic() block.
- Row-level locking: select_for_update() serializes concurrent writers on
  the same holder.
- Idempotency: enforced via a unique constraint on
  BalanceMovement.idempotency_key, so a retried call never double-applies.
- Race-condition safety: the balance update uses a database-level F()
  expression.
- Non-negative balances: a debit that would overdraw raises
  InsufficientFunds and leaves nothing behind.
"""

import logging
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from cashflow.domain.exceptions import IdempotencyReplay, InsufficientFunds, InvalidAmount
from cashflow.domain.money import ZERO, parse_amount
from cashflow.models import Account, BalanceMovement

logger = logging.getLogger(__name__)


def get_balance(holder_id):
    """Current balance of ``holder_id``; holders without an account have zero."""
    balance = (
        Account.objects
        .filter(holder_id=holder_id)
        .values_list("balance", flat=True)
        .first()
    )
    return ZERO if balance is None else balance


def has_applied(idempotency_key):
    return BalanceMovement.objects.filter(idempotency_key=idempotency_key).exists()


def lock_accounts(holder_ids):
    """
    Lock the accounts of ``holder_ids`` for the rest of the current transaction.

    Missing accounts are opened with a zero balance. Rows are locked in
    holder_id order so two-party movements in opposite directions cannot
    deadlock. Returns a dict of holder_id to locked Account.
    """
    ordered = sorted(set(holder_ids))
    for holder_id in ordered:
        Account.objects.get_or_create(holder_id=holder_id)

    locked = (
        Account.objects
        .select_for_update()
        .filter(holder_id__in=ordered)
        .order_by("holder_id")
    )
    return {account.holder_id: account for account in locked}


def _coerce_delta(delta):
    try:
        value = delta if isinstance(delta, Decimal) else Decimal(str(delta).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmount(delta, "delta is not a number")

    magnitude = parse_amount(value.copy_abs())
    return magnitude if value > 0 else -magnitude


def apply_delta(holder_id, delta, idempotency_key):
    """
    Add ``delta`` (negative for a debit) to the holder's balance and return the new balance.

    Raises IdempotencyReplay if ``idempotency_key`` was already applied and
    InsufficientFunds if a debit would take the balance below zero.
    """
    delta = _coerce_delta(delta)

    with transaction.atomic():
        Account.objects.get_or_create(holder_id=holder_id)

        # Lock the account row to prevent concurrent reads of stale balance
        account = (
            Account.objects
            .select_for_update()
            .get(holder_id=holder_id)
        )

        if has_applied(idempotency_key):
            logger.info(
                "Idempotency replay: key=%s holder=%s",
                idempotency_key, holder_id,
            )
            raise IdempotencyReplay(idempotency_key)

        new_balance = account.balance + delta
        if new_balance < 0:
            logger.warning(
                "Insufficient funds: holder=%s requested=%s available=%s",
                holder_id, -delta, account.balance,
            )
            raise InsufficientFunds(holder_id, -delta, account.balance)

        try:
            with transaction.atomic():
                BalanceMovement.objects.create(
                    account=account,
                    delta=delta,
                    balance_after=new_balance,
                    idempotency_key=idempotency_key,
                )
        except IntegrityError:
            # Lost a race with another writer presenting the same key
            logger.info(
                "Idempotency replay: key=%s holder=%s",
                idempotency_key, holder_id,
            )
            raise IdempotencyReplay(idempotency_key)

        # F() expression ensures the UPDATE uses the database value, not the Python-cached one
        Account.objects.filter(pk=account.pk).update(
            balance=F("balance") + delta,
            updated_at=timezone.now(),
        )

        account.refresh_from_db(fields=["balance"])

    logger.info(
        "Balance moved: holder=%s delta=%s balance=%s key=%s",
        holder_id, delta, account.balance, idempotency_key,
    )
    return account.balance
