"""Exceptions raised by the ledger core."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class MalformedEventError(LedgerError):
    """Raised when a provider event lacks required metadata."""

    def __init__(self, reason: str, session_id: str | None = None):
        self.reason = reason
        self.session_id = session_id
        msg = reason
        if session_id:
            msg = f"{reason} (session {session_id})"
        super().__init__(msg)


class TransactionNotFound(LedgerError):
    """Raised when a transaction id is unknown or belongs to the other payment mode."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class InvariantViolation(LedgerError):
    """Raised when a payout or refund would exceed what the transaction can cover."""

    def __init__(self, transaction_id: str, requested: int, available: int, kind: str):
        self.transaction_id = transaction_id
        self.requested = requested
        self.available = available
        self.kind = kind
        super().__init__(
            f"{kind} of {requested} exceeds available {available} on transaction {transaction_id}"
        )


class InvalidTransition(LedgerError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from {current} to {target}")


class DisbursementError(LedgerError):
    """Raised when the external transfer call for a payout fails."""

    def __init__(self, payout_id: str, reason: str):
        self.payout_id = payout_id
        self.reason = reason
        super().__init__(f"Disbursement failed for payout {payout_id}: {reason}")


class InvalidDistanceError(LedgerError, ValueError):
    """Raised for negative or non-finite delivery distances."""

    def __init__(self, distance):
        self.distance = distance
        super().__init__(f"Invalid delivery distance: {distance!r}")


class ReferenceConflict(LedgerError):
    """Raised when a provider reference is already recorded against another transaction."""

    def __init__(self, provider_ref: str):
        self.provider_ref = provider_ref
        super().__init__(f"Provider reference already recorded elsewhere: {provider_ref}")


class PayoutNotFound(LedgerError):
    """Raised when a provider transfer cannot be matched to a payout in this mode."""

    def __init__(self, provider_ref: str):
        self.provider_ref = provider_ref
        super().__init__(f"No payout for transfer {provider_ref}")


class PayoutBelowMinimum(LedgerError):
    """Raised when a seller asks for a payout smaller than the minimum."""

    def __init__(self, seller_id: str, available: int, minimum: int):
        self.seller_id = seller_id
        self.available = available
        self.minimum = minimum
        super().__init__(
            f"Available balance {available} for {seller_id} is below the minimum payout of {minimum}"
        )
