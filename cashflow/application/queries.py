"""Side-effect-free reads for presentation layers."""

from cashflow.application import accounts, ledger
from cashflow.models import ReturnRequest, ReturnStatus


def get_account_balance(holder_id):
    return accounts.get_balance(holder_id)


def list_assignments(custodian_id=None, recipient_id=None):
    """Assignments handed out by a custodian and/or received by a recipient, newest first."""
    if custodian_id is None and recipient_id is None:
        raise ValueError("custodian_id or recipient_id is required")

    if recipient_id is None:
        return ledger.list_for_custodian(custodian_id)
    if custodian_id is None:
        return ledger.list_for_recipient(recipient_id)
    return ledger.list_for_recipient(recipient_id).filter(custodian_id=custodian_id)


def list_return_requests(custodian_id=None, requester_id=None, status=None):
    """Return requests addressed to a custodian and/or raised by a requester, newest first."""
    if custodian_id is None and requester_id is None:
        raise ValueError("custodian_id or requester_id is required")
    if status is not None and status not in ReturnStatus.values:
        raise ValueError(f"unknown status: {status}")

    requests = ReturnRequest.objects.all()
    if custodian_id is not None:
        requests = requests.filter(custodian_id=custodian_id)
    if requester_id is not None:
        requests = requests.filter(requester_id=requester_id)
    if status is not None:
        requests = requests.filter(status=status)
    return requests.order_by("-requested_at", "-id")
