class CashflowError(Exception):
    """Base class for every recoverable business-rule violation in the cashflow core."""

    code = "cashflow_error"


class InvalidAmount(CashflowError):
    """Raised when an amount is missing, malformed, non-finite or not strictly positive."""

    code = "invalid_amount"

    def __init__(self, amount, reason="amount must be a positive decimal"):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class InsufficientFunds(CashflowError):
    """Raised when a holder's balance does not cover a requested debit."""

    code = "insufficient_funds"

    def __init__(self, holder_id, requested, available):
        self.holder_id = holder_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Holder {holder_id}: requested {requested}, available {available}"
        )


class NotFound(CashflowError):
    """Raised when a return request or assignment id does not exist."""

    code = "not_found"

    def __init__(self, entity, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class NotAuthorized(CashflowError):
    """Raised when the acting holder is not the custodian of a return request."""

    code = "not_authorized"

    def __init__(self, actor_id, request_id):
        self.actor_id = actor_id
        self.request_id = request_id
        super().__init__(
            f"{actor_id} is not the custodian of return request {request_id}"
        )


class AlreadyDecided(CashflowError):
    """Raised when approving or rejecting a request that is no longer pending."""

    code = "already_decided"

    def __init__(self, request_id, status):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Return request {request_id} is already {status}")


class AlreadyReturned(CashflowError):
    """Raised when marking an assignment returned a second time."""

    code = "already_returned"

    def __init__(self, assignment_id):
        self.assignment_id = assignment_id
        super().__init__(f"Assignment {assignment_id} is already returned")


class NoCustodianAssigned(CashflowError):
    """Raised when a return request is created without a resolved custodian."""

    code = "no_custodian_assigned"

    def __init__(self, requester_id):
        self.requester_id = requester_id
        super().__init__(f"No custodian is assigned to {requester_id}")


class SettlementFailed(CashflowError):
    """Raised when persistence fails inside a settlement; the whole transaction was rolled back."""

    code = "settlement_failed"

    def __init__(self, request_id):
        self.request_id = request_id
        super().__init__(
            f"Settlement of return request {request_id} failed and was rolled back; retry later"
        )


class IdempotencyReplay(CashflowError):
    """Raised when a balance movement with a duplicate idempotency_key is detected."""

    code = "idempotency_replay"

    def __init__(self, idempotency_key):
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency replay detected for key: {idempotency_key}"
        )
