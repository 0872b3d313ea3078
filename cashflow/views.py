"""
HTTP adapter for cashflow, mounted at /api/cashflow/.

Seven endpoints:

    GET       accounts/<holder_id>/balance/          current balance
    GET, POST assignments/                          list by party, or assign funds
    GET, POST return-requests/                      list by party and status, or open a return
    POST      return-requests/<id>/approve/         approve and settle
    POST      return-requests/<id>/reject/          reject with an optional reason
    GET       notifications/                        inbox with unread count
    POST      notifications/mark-read/              mark some or all read

Views only coerce payload fields and call cashflow.application. Every
CashflowError becomes a JSON body {"error", "code"} with the status from
ERROR_STATUS: bad amounts are 400, missing funds or custodian 422, unknown
ids 404, the wrong approver 403, decisions on decided requests 409, and a
rolled-back settlement 503 (safe to retry). An idempotency replay answers
200 "Request already processed.".

There is no authentication layer here; actor ids (approver_id,
recipient_id) arrive in the payload from an upstream gateway.
"""

import uuid

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from cashflow.application import inbox, ledger, queries, return_requests
from cashflow.conf import custodian_resolver
from cashflow.domain.exceptions import (
    AlreadyDecided,
    AlreadyReturned,
    CashflowError,
    IdempotencyReplay,
    InsufficientFunds,
    InvalidAmount,
    NoCustodianAssigned,
    NotAuthorized,
    NotFound,
    SettlementFailed,
)

ERROR_STATUS = {
    InvalidAmount: status.HTTP_400_BAD_REQUEST,
    InsufficientFunds: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFound: status.HTTP_404_NOT_FOUND,
    NotAuthorized: status.HTTP_403_FORBIDDEN,
    AlreadyDecided: status.HTTP_409_CONFLICT,
    AlreadyReturned: status.HTTP_409_CONFLICT,
    NoCustodianAssigned: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SettlementFailed: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _error_response(exc):
    if isinstance(exc, IdempotencyReplay):
        return Response(
            {"message": "Request already processed."},
            status=status.HTTP_200_OK,
        )
    return Response(
        {"error": str(exc), "code": exc.code},
        status=ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
    )


def _bad_request(message):
    return Response({"error": message}, status=status.HTTP_400_BAD_REQUEST)


def _assignment_payload(assignment):
    return {
        "id": str(assignment.id),
        "custodian_id": assignment.custodian_id,
        "recipient_id": assignment.recipient_id,
        "amount": str(assignment.amount),
        "assigned_at": assignment.assigned_at.isoformat(),
        "is_returned": assignment.is_returned,
        "returned_at": assignment.returned_at.isoformat() if assignment.returned_at else None,
        "settlement_ref": str(assignment.settlement_ref_id) if assignment.settlement_ref_id else None,
    }


def _return_request_payload(request):
    return {
        "id": str(request.id),
        "requester_id": request.requester_id,
        "custodian_id": request.custodian_id,
        "amount": str(request.amount),
        "status": request.status,
        "requested_at": request.requested_at.isoformat(),
        "decided_at": request.decided_at.isoformat() if request.decided_at else None,
        "decided_by": request.decided_by,
        "rejection_reason": request.rejection_reason,
    }


def _notification_payload(notification):
    return {
        "id": str(notification.id),
        "kind": notification.kind,
        "subject_id": str(notification.subject_id),
        "title": notification.title,
        "message": notification.message,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat(),
    }


class AccountBalanceView(APIView):
    """GET /api/cashflow/accounts/<holder_id>/balance/"""

    def get(self, request, holder_id):
        balance = queries.get_account_balance(holder_id)
        return Response({"holder_id": holder_id, "balance": str(balance)})


class AssignmentListView(APIView):
    """
    GET  /api/cashflow/assignments/?custodian_id=...|recipient_id=...
    POST /api/cashflow/assignments/
    """

    def get(self, request):
        custodian_id = request.query_params.get("custodian_id")
        recipient_id = request.query_params.get("recipient_id")

        if not (custodian_id or recipient_id):
            return _bad_request("custodian_id or recipient_id is required.")

        assignments = queries.list_assignments(
            custodian_id=custodian_id or None,
            recipient_id=recipient_id or None,
        )
        return Response({"results": [_assignment_payload(a) for a in assignments]})

    def post(self, request):
        custodian_id = request.data.get("custodian_id")
        recipient_id = request.data.get("recipient_id")
        amount = request.data.get("amount")
        fund_from_custodian = request.data.get("fund_from_custodian", True)

        if not all([custodian_id, recipient_id, amount]):
            return _bad_request("custodian_id, recipient_id, and amount are required.")

        if not isinstance(fund_from_custodian, bool):
            return _bad_request("fund_from_custodian must be a boolean.")

        try:
            assignment = ledger.assign_funds(
                custodian_id,
                recipient_id,
                amount,
                fund_from_custodian=fund_from_custodian,
            )
        except CashflowError as exc:
            return _error_response(exc)

        return Response(_assignment_payload(assignment), status=status.HTTP_201_CREATED)


class ReturnRequestListView(APIView):
    """
    GET  /api/cashflow/return-requests/?custodian_id=...|requester_id=...[&status=...]
    POST /api/cashflow/return-requests/

    When the POST body has no custodian_id the configured custodian resolver
    is asked for one.
    """

    def get(self, request):
        custodian_id = request.query_params.get("custodian_id") or None
        requester_id = request.query_params.get("requester_id") or None
        status_filter = request.query_params.get("status") or None

        try:
            requests = queries.list_return_requests(
                custodian_id=custodian_id,
                requester_id=requester_id,
                status=status_filter,
            )
        except ValueError as exc:
            return _bad_request(str(exc))

        return Response({"results": [_return_request_payload(r) for r in requests]})

    def post(self, request):
        requester_id = request.data.get("requester_id")
        custodian_id = request.data.get("custodian_id")
        amount = request.data.get("amount")

        if not all([requester_id, amount]):
            return _bad_request("requester_id and amount are required.")

        if not custodian_id:
            custodian_id = custodian_resolver()(requester_id)

        try:
            return_request = return_requests.create_request(requester_id, custodian_id, amount)
        except CashflowError as exc:
            return _error_response(exc)

        return Response(_return_request_payload(return_request), status=status.HTTP_201_CREATED)


class ApproveReturnRequestView(APIView):
    """POST /api/cashflow/return-requests/<request_id>/approve/"""

    def post(self, request, request_id):
        approver_id = request.data.get("approver_id")
        if not approver_id:
            return _bad_request("approver_id is required.")

        try:
            result = return_requests.approve(request_id, approver_id)
        except CashflowError as exc:
            return _error_response(exc)

        return Response({
            "request_id": str(result.request_id),
            "status": "approved",
            "requester_balance": str(result.requester_balance),
            "custodian_balance": str(result.custodian_balance),
            "returned_assignment_id": (
                str(result.returned_assignment_id) if result.returned_assignment_id else None
            ),
        })


class RejectReturnRequestView(APIView):
    """POST /api/cashflow/return-requests/<request_id>/reject/"""

    def post(self, request, request_id):
        approver_id = request.data.get("approver_id")
        reason = request.data.get("reason")

        if not approver_id:
            return _bad_request("approver_id is required.")

        if reason is not None and not isinstance(reason, str):
            return _bad_request("reason must be a string.")

        try:
            return_request = return_requests.reject(request_id, approver_id, reason)
        except CashflowError as exc:
            return _error_response(exc)

        return Response(_return_request_payload(return_request))


class NotificationListView(APIView):
    """GET /api/cashflow/notifications/?recipient_id=...[&unread=1]"""

    def get(self, request):
        recipient_id = request.query_params.get("recipient_id")
        if not recipient_id:
            return _bad_request("recipient_id is required.")

        unread_only = request.query_params.get("unread") in ("1", "true", "yes")
        notifications = inbox.list_notifications(recipient_id, unread_only=unread_only)
        return Response({
            "unread_count": inbox.unread_count(recipient_id),
            "results": [_notification_payload(n) for n in notifications],
        })


class MarkNotificationsReadView(APIView):
    """POST /api/cashflow/notifications/mark-read/"""

    def post(self, request):
        recipient_id = request.data.get("recipient_id")
        ids = request.data.get("ids")

        if not recipient_id:
            return _bad_request("recipient_id is required.")

        if ids is not None:
            try:
                ids = [uuid.UUID(str(value)) for value in ids]
            except (TypeError, ValueError):
                return _bad_request("ids must be a list of notification ids.")

        updated = inbox.mark_read(recipient_id, ids)
        return Response({"updated": updated})
