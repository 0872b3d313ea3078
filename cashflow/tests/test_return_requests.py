from decimal import Decimal
from unittest import mock

from django.db import DatabaseError, OperationalError
from django.db.models import Sum
from django.test import TestCase

from cashflow.application import accounts, ledger, return_requests, settlement
from cashflow.application.notifier import ChangeNotifier
from cashflow.domain.events import EventKind
from cashflow.domain.exceptions import (
    AlreadyDecided,
    InsufficientFunds,
    InvalidAmount,
    NoCustodianAssigned,
    NotAuthorized,
    NotFound,
    SettlementFailed,
)
from cashflow.models import Account, Assignment, Notification, ReturnRequest, ReturnStatus

CASHIER = "cashier-1"
HOLDER = "employee-1"


def total_balance():
    return Account.objects.aggregate(total=Sum("balance"))["total"] or Decimal("0")


class WorkflowTestCase(TestCase):

    def setUp(self):
        self.notifier = ChangeNotifier(asynchronous=False)
        self.events = []
        self.notifier.subscribe_all(self.events.append)
        accounts.apply_delta(HOLDER, "500", f"seed:{HOLDER}")

    def create(self, amount, requester=HOLDER, custodian=CASHIER):
        return return_requests.create_request(requester, custodian, amount, notifier=self.notifier)


class CreateRequestTest(WorkflowTestCase):

    def test_creates_pending_request_without_touching_balances(self):
        request = self.create("200")

        self.assertEqual(request.status, ReturnStatus.PENDING)
        self.assertIsNone(request.decided_at)
        self.assertEqual(request.amount, Decimal("200"))
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("500"))
        self.assertEqual(accounts.get_balance(CASHIER), Decimal("0"))

        notification = Notification.objects.get()
        self.assertEqual(notification.recipient_id, CASHIER)
        self.assertEqual(notification.kind, EventKind.RETURN_REQUESTED)
        self.assertEqual(notification.subject_id, request.id)

    def test_amount_over_balance_persists_nothing(self):
        with self.assertRaises(InsufficientFunds):
            self.create("500.01")

        self.assertEqual(ReturnRequest.objects.count(), 0)
        self.assertEqual(Notification.objects.count(), 0)

    def test_holder_with_100_cannot_return_150(self):
        accounts.apply_delta(HOLDER, "-400", "spend")

        with self.assertRaises(InsufficientFunds):
            self.create("150")

        self.assertEqual(ReturnRequest.objects.count(), 0)

    def test_invalid_amount(self):
        for amount in ("0", "-10", "ten"):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    self.create(amount)

        self.assertEqual(ReturnRequest.objects.count(), 0)

    def test_missing_custodian(self):
        with self.assertRaises(NoCustodianAssigned):
            self.create("10", custodian=None)

        self.assertEqual(ReturnRequest.objects.count(), 0)

    def test_pending_requests_do_not_reserve_funds(self):
        self.create("400")
        self.create("400")

        self.assertEqual(ReturnRequest.objects.filter(status=ReturnStatus.PENDING).count(), 2)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("500"))


class ApproveTest(WorkflowTestCase):

    def test_approval_moves_funds_and_closes_matching_assignment(self):
        ledger.assign_funds(CASHIER, HOLDER, "250", fund_from_custodian=False, notifier=self.notifier)
        accounts.apply_delta(HOLDER, "-250", "spend-assignment")
        request = self.create("200")

        with self.captureOnCommitCallbacks(execute=True):
            result = return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        self.assertEqual(result.requester_balance, Decimal("300"))
        self.assertEqual(result.custodian_balance, Decimal("200"))
        self.assertFalse(result.replayed)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("300"))
        self.assertEqual(accounts.get_balance(CASHIER), Decimal("200"))

        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.APPROVED)
        self.assertIsNotNone(request.decided_at)
        self.assertEqual(request.decided_by, CASHIER)
        self.assertIsNone(request.rejection_reason)

        assignment = Assignment.objects.get()
        self.assertEqual(result.returned_assignment_id, assignment.id)
        self.assertTrue(assignment.is_returned)
        self.assertEqual(assignment.settlement_ref_id, request.id)

        kinds = [(e.recipient_id, e.kind) for e in self.events if e.subject_id == request.id]
        self.assertIn((HOLDER, EventKind.RETURN_APPROVED), kinds)
        self.assertIn((HOLDER, EventKind.BALANCE_CHANGED), kinds)
        self.assertIn((CASHIER, EventKind.BALANCE_CHANGED), kinds)

    def test_approval_without_covering_assignment_leaves_assignments_alone(self):
        small = ledger.create_assignment(CASHIER, HOLDER, "100")
        request = self.create("200")

        result = return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        self.assertIsNone(result.returned_assignment_id)
        small.refresh_from_db()
        self.assertFalse(small.is_returned)

    def test_balance_reduced_before_approval(self):
        accounts.apply_delta(HOLDER, "-200", "spend")
        request = self.create("200")
        accounts.apply_delta(HOLDER, "-200", "spend-again")

        with self.assertRaises(InsufficientFunds):
            return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.PENDING)
        self.assertIsNone(request.decided_at)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("100"))
        self.assertEqual(accounts.get_balance(CASHIER), Decimal("0"))

    def test_only_the_custodian_may_approve(self):
        request = self.create("50")

        with self.assertRaises(NotAuthorized):
            return_requests.approve(request.id, "someone-else", notifier=self.notifier)

        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.PENDING)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("500"))

    def test_unknown_request(self):
        request = self.create("50")
        ReturnRequest.objects.filter(pk=request.pk).delete()

        with self.assertRaises(NotFound):
            return_requests.approve(request.id, CASHIER, notifier=self.notifier)
        with self.assertRaises(NotFound):
            return_requests.approve("not-a-uuid", CASHIER, notifier=self.notifier)

    def test_second_approval_is_already_decided(self):
        request = self.create("100")
        return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        with self.assertRaises(AlreadyDecided):
            return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        self.assertEqual(accounts.get_balance(HOLDER), Decimal("400"))
        self.assertEqual(accounts.get_balance(CASHIER), Decimal("100"))

    def test_persistence_failure_rolls_back_everything(self):
        ledger.create_assignment(CASHIER, HOLDER, "500")
        request = self.create("200")
        real_apply_delta = accounts.apply_delta

        def fail_on_credit(holder_id, delta, idempotency_key):
            if idempotency_key.endswith(":credit"):
                raise DatabaseError("connection lost")
            return real_apply_delta(holder_id, delta, idempotency_key)

        with mock.patch("cashflow.application.accounts.apply_delta", side_effect=fail_on_credit):
            with self.assertRaises(SettlementFailed):
                return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.PENDING)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("500"))
        self.assertEqual(accounts.get_balance(CASHIER), Decimal("0"))
        self.assertFalse(accounts.has_applied(settlement.debit_key(request.id)))
        self.assertFalse(Assignment.objects.get().is_returned)


class RejectTest(WorkflowTestCase):

    def test_reject_records_reason_and_moves_nothing(self):
        request = self.create("100")

        rejected = return_requests.reject(request.id, CASHIER, "  count is off  ", notifier=self.notifier)

        self.assertEqual(rejected.status, ReturnStatus.REJECTED)
        self.assertEqual(rejected.rejection_reason, "count is off")
        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.REJECTED)
        self.assertIsNotNone(request.decided_at)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("500"))

        notification = Notification.objects.get(recipient_id=HOLDER)
        self.assertEqual(notification.kind, EventKind.RETURN_REJECTED)
        self.assertIn("count is off", notification.message)

    def test_blank_reason_is_stored_as_null(self):
        request = self.create("100")

        rejected = return_requests.reject(request.id, CASHIER, "   ", notifier=self.notifier)

        self.assertIsNone(rejected.rejection_reason)

    def test_reject_checks_the_same_preconditions(self):
        request = self.create("100")

        with self.assertRaises(NotAuthorized):
            return_requests.reject(request.id, HOLDER, notifier=self.notifier)

        return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        with self.assertRaises(AlreadyDecided):
            return_requests.reject(request.id, CASHIER, notifier=self.notifier)

        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.APPROVED)
        self.assertIsNone(request.rejection_reason)

    def test_approve_after_reject_is_already_decided(self):
        request = self.create("100")
        return_requests.reject(request.id, CASHIER, notifier=self.notifier)

        with self.assertRaises(AlreadyDecided):
            return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        self.assertEqual(accounts.get_balance(HOLDER), Decimal("500"))

    def test_stale_decision_loses_the_compare_and_set(self):
        request = self.create("100")
        stale = ReturnRequest.objects.get(pk=request.pk)
        return_requests.reject(request.id, CASHIER, notifier=self.notifier)

        with self.assertRaises(AlreadyDecided) as ctx:
            return_requests._transition(stale, ReturnStatus.APPROVED, CASHIER)

        self.assertEqual(ctx.exception.status, ReturnStatus.REJECTED)


class ConservationTest(WorkflowTestCase):

    def test_total_balance_changes_only_by_zero_net_at_approval(self):
        accounts.apply_delta(CASHIER, "1000", f"seed:{CASHIER}")
        accounts.apply_delta("employee-2", "80", "seed:employee-2")
        start = total_balance()

        r1 = self.create("200")
        r2 = self.create("50", requester="employee-2")
        r3 = self.create("100")
        self.assertEqual(total_balance(), start)

        return_requests.approve(r1.id, CASHIER, notifier=self.notifier)
        self.assertEqual(total_balance(), start)

        return_requests.reject(r2.id, CASHIER, notifier=self.notifier)
        return_requests.approve(r3.id, CASHIER, notifier=self.notifier)
        self.assertEqual(total_balance(), start)

        self.assertEqual(accounts.get_balance(HOLDER), Decimal("200"))
        self.assertEqual(accounts.get_balance("employee-2"), Decimal("80"))
        self.assertEqual(accounts.get_balance(CASHIER), Decimal("1300"))

        for request in ReturnRequest.objects.all():
            if request.status == ReturnStatus.REJECTED:
                self.assertIsNotNone(request.decided_at)
            else:
                self.assertIsNone(request.rejection_reason)


class SettleIdempotenceTest(WorkflowTestCase):

    def test_settling_twice_moves_funds_once(self):
        assignment = ledger.create_assignment(CASHIER, HOLDER, "300")
        request = self.create("200")

        first = settlement.settle(request)
        second = settlement.settle(request)

        self.assertFalse(first.replayed)
        self.assertTrue(second.replayed)
        self.assertEqual(second.requester_balance, Decimal("300"))
        self.assertEqual(second.custodian_balance, Decimal("200"))
        self.assertEqual(second.returned_assignment_id, assignment.id)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("300"))
        self.assertEqual(accounts.get_balance(CASHIER), Decimal("200"))


class LostDecisionRaceTest(WorkflowTestCase):
    """A database error caused by another session's decision reads as AlreadyDecided."""

    def test_locked_settlement_on_a_decided_request_is_already_decided(self):
        request = self.create("200")

        with mock.patch(
            "cashflow.application.settlement.settle",
            side_effect=SettlementFailed(request.id),
        ), mock.patch(
            "cashflow.application.return_requests._current_status",
            return_value=ReturnStatus.APPROVED,
        ):
            with self.assertRaises(AlreadyDecided) as ctx:
                return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        self.assertEqual(ctx.exception.status, ReturnStatus.APPROVED)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("500"))

    def test_locked_settlement_on_a_pending_request_stays_retryable(self):
        request = self.create("200")

        with mock.patch(
            "cashflow.application.settlement.settle",
            side_effect=SettlementFailed(request.id),
        ):
            with self.assertRaises(SettlementFailed):
                return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.PENDING)

    def test_locked_rejection_on_a_decided_request_is_already_decided(self):
        request = self.create("200")

        with mock.patch(
            "cashflow.application.return_requests._transition",
            side_effect=OperationalError("database table is locked"),
        ), mock.patch(
            "cashflow.application.return_requests._current_status",
            return_value=ReturnStatus.APPROVED,
        ):
            with self.assertRaises(AlreadyDecided):
                return_requests.reject(request.id, CASHIER, notifier=self.notifier)

    def test_locked_rejection_on_a_pending_request_propagates(self):
        request = self.create("200")

        with mock.patch(
            "cashflow.application.return_requests._transition",
            side_effect=OperationalError("database table is locked"),
        ):
            with self.assertRaises(OperationalError):
                return_requests.reject(request.id, CASHIER, notifier=self.notifier)


class NotificationCouplingTest(WorkflowTestCase):

    def test_failed_inbox_insert_rolls_back_the_approval(self):
        request = self.create("200")

        with mock.patch.object(
            Notification.objects, "create", side_effect=DatabaseError("inbox unavailable"),
        ):
            with self.assertRaises(SettlementFailed):
                return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.PENDING)
        self.assertEqual(accounts.get_balance(HOLDER), Decimal("500"))
        self.assertEqual(accounts.get_balance(CASHIER), Decimal("0"))
        self.assertEqual(Notification.objects.filter(subject_id=request.id).count(), 1)

    def test_failing_subscriber_does_not_touch_the_approval(self):
        request = self.create("200")

        def broken(event):
            raise RuntimeError("push gateway down")

        self.notifier.subscribe(HOLDER, broken)

        with self.assertLogs("cashflow.application.notifier", level="ERROR"):
            with self.captureOnCommitCallbacks(execute=True):
                result = return_requests.approve(request.id, CASHIER, notifier=self.notifier)

        self.assertEqual(result.requester_balance, Decimal("300"))
        request.refresh_from_db()
        self.assertEqual(request.status, ReturnStatus.APPROVED)
