"""
Amortization Engine

Computes the EMI (equal monthly installment) of a reducing-balance loan and
produces its full installment schedule. Both operations are pure functions of
their inputs: same inputs, same output, every time.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import calendar

from .errors import InvalidInput
from .money import (
    Numeric, ZERO, round_money, monthly_rate,
    require_positive, require_non_negative
)


class InstallmentStatus(Enum):
    """Repayment status of a single installment"""
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


@dataclass
class Installment:
    """Single row of a repayment schedule"""
    installment_number: int
    due_date: date
    emi_amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    outstanding_after: Decimal
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_amount: Decimal = ZERO
    paid_date: Optional[date] = None
    payment_reference_number: Optional[str] = None

    @property
    def amount_due(self) -> Decimal:
        """EMI still unpaid on this installment"""
        return self.emi_amount - self.paid_amount

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installmentNumber': self.installment_number,
            'dueDate': self.due_date.isoformat(),
            'emiAmount': str(self.emi_amount),
            'principalComponent': str(self.principal_component),
            'interestComponent': str(self.interest_component),
            'outstandingAfter': str(self.outstanding_after),
            'status': self.status.value,
            'paidAmount': str(self.paid_amount),
            'paidDate': self.paid_date.isoformat() if self.paid_date else None,
            'paymentReferenceNumber': self.payment_reference_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            installment_number=data['installmentNumber'],
            due_date=date.fromisoformat(data['dueDate']),
            emi_amount=Decimal(data['emiAmount']),
            principal_component=Decimal(data['principalComponent']),
            interest_component=Decimal(data['interestComponent']),
            outstanding_after=Decimal(data['outstandingAfter']),
            status=InstallmentStatus(data['status']),
            paid_amount=Decimal(data['paidAmount']),
            paid_date=date.fromisoformat(data['paidDate']) if data.get('paidDate') else None,
            payment_reference_number=data.get('paymentReferenceNumber'),
        )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_emi(principal: Numeric, annual_rate_percent: Numeric, tenure_months: int) -> Decimal:
    """
    Calculate the equal monthly installment for a reducing-balance loan

    Standard formula: P * r * (1+r)^n / ((1+r)^n - 1), where r is the monthly
    rate and n the tenure in months. A zero rate degenerates to P / n.

    Args:
        principal: Loan principal
        annual_rate_percent: Annual interest rate in percent, e.g. 10 for 10%
        tenure_months: Number of monthly installments

    Returns:
        EMI rounded to 2 decimal places

    Raises:
        InvalidInput: If principal <= 0, tenure <= 0 or rate < 0
    """
    principal = require_positive(principal, "Principal")
    annual_rate_percent = require_non_negative(annual_rate_percent, "Annual interest rate")
    if isinstance(tenure_months, bool) or not isinstance(tenure_months, int) or tenure_months <= 0:
        raise InvalidInput(f"Tenure must be a positive number of months, got {tenure_months!r}")

    rate = monthly_rate(annual_rate_percent)
    if rate == ZERO:
        return round_money(principal / Decimal(tenure_months))

    factor = (Decimal('1') + rate) ** tenure_months
    emi = principal * rate * factor / (factor - Decimal('1'))
    return round_money(emi)


def generate_schedule(
    principal: Numeric,
    annual_rate_percent: Numeric,
    tenure_months: int,
    emi: Numeric,
    first_due_date: date
) -> List[Installment]:
    """
    Generate the repayment schedule of a reducing-balance loan

    Each row charges interest on the running balance, rounded, and retires
    ``emi - interest`` of principal. The last row absorbs the accumulated
    rounding difference: it retires exactly the remaining balance so the
    schedule closes at zero and the principal components sum to the principal.
    At a zero rate there is no interest to absorb the difference, so the last
    row's amount due is the remaining balance itself.

    Returns:
        Installments numbered 1..tenure_months, all PENDING and unpaid
    """
    principal = require_positive(principal, "Principal")
    annual_rate_percent = require_non_negative(annual_rate_percent, "Annual interest rate")
    emi = round_money(require_positive(emi, "EMI"))
    if isinstance(tenure_months, bool) or not isinstance(tenure_months, int) or tenure_months <= 0:
        raise InvalidInput(f"Tenure must be a positive number of months, got {tenure_months!r}")

    rate = monthly_rate(annual_rate_percent)
    outstanding = round_money(principal)

    if tenure_months > 1 and emi <= round_money(outstanding * rate):
        raise InvalidInput(f"EMI {emi} does not cover the first month's interest")

    schedule = []
    for number in range(1, tenure_months + 1):
        interest_component = round_money(outstanding * rate)
        row_emi = emi

        if number == tenure_months:
            principal_component = outstanding
            if rate == ZERO:
                row_emi = outstanding
        else:
            principal_component = min(round_money(emi - interest_component), outstanding)

        outstanding = max(ZERO, outstanding - principal_component)

        schedule.append(Installment(
            installment_number=number,
            due_date=add_months(first_due_date, number - 1),
            emi_amount=row_emi,
            principal_component=principal_component,
            interest_component=interest_component,
            outstanding_after=outstanding
        ))

    return schedule


def total_payable(schedule: List[Installment]) -> Decimal:
    """Sum of all scheduled installments"""
    return round_money(sum((installment.emi_amount for installment in schedule), ZERO))
