"""Default values for case fields set on creation."""

from app.db.enums.cases import DebtorType

DEFAULT_CASE_STATUS = "active"
DEFAULT_CASE_STAGE = "initial_contact"

# Status excluded from active-case totals (compared case-insensitively)
CLOSED_CASE_STATUS = "closed"
DEFAULT_DEBTOR_TYPE = DebtorType.INDIVIDUAL.value
