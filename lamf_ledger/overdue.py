"""
Overdue/NPA Classifier

Periodic sweep comparing installment due dates with an explicit ``today`` and
reclassifying installments and the loan. Safe to re-run: a second sweep with
the same ``today`` and no payment in between changes nothing.
"""

from datetime import date
from decimal import Decimal
from typing import Tuple

from .amortization import InstallmentStatus
from .loans import Loan, LoanStatus, TERMINAL_STATUSES, transition
from .money import ZERO

DEFAULT_NPA_THRESHOLD_DAYS = 90


def sweep_overdue(
    loan: Loan,
    today: date,
    npa_threshold_days: int = DEFAULT_NPA_THRESHOLD_DAYS
) -> Tuple[int, Decimal]:
    """
    Reclassify a loan's unpaid installments against today's date

    Every unpaid installment past its due date becomes OVERDUE. The loan
    records the oldest day-gap as ``days_overdue`` and the unpaid EMI of all
    overdue installments as ``overdue_amount``. A loan with anything overdue
    moves to NPA beyond the threshold and to OVERDUE otherwise; a loan with
    nothing overdue keeps its status.

    Closed, foreclosed, settled and written-off loans are returned as-is.

    Returns:
        Tuple of (days_overdue, overdue_amount)
    """
    if loan.status in TERMINAL_STATUSES:
        return loan.days_overdue, loan.overdue_amount

    days_overdue = 0
    overdue_amount = ZERO
    for installment in loan.schedule:
        if installment.is_paid or today <= installment.due_date:
            continue
        installment.status = InstallmentStatus.OVERDUE
        overdue_amount += installment.amount_due
        days_overdue = max(days_overdue, (today - installment.due_date).days)

    loan.days_overdue = days_overdue
    loan.overdue_amount = overdue_amount

    if days_overdue > 0:
        transition(loan, LoanStatus.NPA if days_overdue > npa_threshold_days else LoanStatus.OVERDUE)

    return days_overdue, overdue_amount
