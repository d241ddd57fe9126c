"""Typed failures raised by the circulation, fine and hold engines.

Each error carries a stable ``code`` and the HTTP status the API layer maps it to.
Nothing here is raised after a transaction has committed: an engine either
succeeds completely or raises one of these with the session rolled back.
"""


class CirculationError(Exception):
    """Base exception for circulation engine failures."""

    code = "circulation_error"
    status_code = 400

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


# --- Eligibility ---
class EligibilityError(CirculationError):
    """Member is not eligible for this operation."""

    code = "ineligible"
    status_code = 403


class IneligibleMember(EligibilityError):
    """Member account has active holds."""

    code = "ineligible_member"


class LimitExceeded(EligibilityError):
    """Member has reached their borrowing limit."""

    code = "limit_exceeded"


class NoAvailableUnit(EligibilityError):
    """No available copy of the requested item."""

    code = "no_available_unit"
    status_code = 409


class NotDownloadable(EligibilityError):
    """This catalog entry is not available for download."""

    code = "not_downloadable"
    status_code = 400


# --- State conflicts (idempotency guards) ---
class StateConflictError(CirculationError):
    """Record is not in a state that allows this transition."""

    code = "state_conflict"
    status_code = 409


class AlreadyReturned(StateConflictError):
    """Loan has already been returned."""

    code = "already_returned"


class AlreadyPaid(StateConflictError):
    """Fine is already paid."""

    code = "already_paid"


class AlreadyWaived(StateConflictError):
    """Fine is already waived."""

    code = "already_waived"


class NotActive(StateConflictError):
    """Hold is not active."""

    code = "not_active"


class NotRenewable(StateConflictError):
    """Loan cannot be renewed."""

    code = "not_renewable"


# --- Lookups and input ---
class NotFound(CirculationError):
    """Requested record does not exist."""

    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidAmount(CirculationError):
    """Amount must be greater than 0."""

    code = "invalid_amount"
    status_code = 400
