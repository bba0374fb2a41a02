"""
Loan Module

Loan data model, the payment allocator (FIFO waterfall over the repayment
schedule), prepayment/foreclosure accounting and the loan state machine.

Aggregate balances are never adjusted incrementally: every mutating operation
recomputes them from the schedule and the payment list, so they cannot drift.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from enum import Enum
import uuid

from .amortization import (
    Installment, InstallmentStatus, add_months, calculate_emi,
    generate_schedule, total_payable
)
from .errors import InvalidInput, InvalidAmount, InvalidLoanState
from .money import Numeric, ZERO, HUNDRED, to_decimal, round_money, require_positive
from .products import LoanProduct
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    NPA = "NPA"                    # Non-performing: more than 90 days overdue
    CLOSED = "CLOSED"              # Fully repaid on schedule
    FORECLOSED = "FORECLOSED"      # Repaid early through prepayment
    SETTLED = "SETTLED"
    WRITTEN_OFF = "WRITTEN_OFF"


class MarginCallStatus(Enum):
    NONE = "NONE"
    TRIGGERED = "TRIGGERED"
    RESOLVED = "RESOLVED"
    LIQUIDATED = "LIQUIDATED"


class PaymentMode(Enum):
    NACH = "NACH"
    UPI = "UPI"
    NETBANKING = "NETBANKING"
    CHEQUE = "CHEQUE"
    CASH = "CASH"
    NEFT = "NEFT"
    RTGS = "RTGS"


class PaymentStatus(Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"
    REVERSED = "REVERSED"


OPEN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.NPA)
TERMINAL_STATUSES = (
    LoanStatus.CLOSED, LoanStatus.FORECLOSED, LoanStatus.SETTLED, LoanStatus.WRITTEN_OFF
)

LOAN_TRANSITIONS = {
    LoanStatus.ACTIVE: {
        LoanStatus.OVERDUE, LoanStatus.NPA, LoanStatus.CLOSED, LoanStatus.FORECLOSED,
        LoanStatus.SETTLED, LoanStatus.WRITTEN_OFF
    },
    LoanStatus.OVERDUE: {
        LoanStatus.ACTIVE, LoanStatus.NPA, LoanStatus.CLOSED,
        LoanStatus.SETTLED, LoanStatus.WRITTEN_OFF
    },
    LoanStatus.NPA: {
        LoanStatus.OVERDUE, LoanStatus.SETTLED, LoanStatus.WRITTEN_OFF
    },
    LoanStatus.CLOSED: set(),
    LoanStatus.FORECLOSED: set(),
    LoanStatus.SETTLED: set(),
    LoanStatus.WRITTEN_OFF: set(),
}


@dataclass(frozen=True)
class Payment:
    """Immutable record of money received against a loan"""
    id: str
    amount: Decimal
    payment_date: date
    mode: PaymentMode
    reference_number: Optional[str]
    installments_covered: Tuple[int, ...] = ()
    status: PaymentStatus = PaymentStatus.SUCCESS
    charge: Decimal = ZERO
    is_prepayment: bool = False

    @property
    def applied_amount(self) -> Decimal:
        """Part of the payment that reduces the loan balance"""
        return self.amount - self.charge

    def to_dict(self) -> Dict[str, Any]:
        return {
            'paymentId': self.id,
            'amount': str(self.amount),
            'paymentDate': self.payment_date.isoformat(),
            'paymentMode': self.mode.value,
            'referenceNumber': self.reference_number,
            'installmentsCovered': list(self.installments_covered),
            'status': self.status.value,
            'charge': str(self.charge),
            'isPrepayment': self.is_prepayment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['paymentId'],
            amount=Decimal(data['amount']),
            payment_date=date.fromisoformat(data['paymentDate']),
            mode=PaymentMode(data['paymentMode']),
            reference_number=data.get('referenceNumber'),
            installments_covered=tuple(data.get('installmentsCovered', [])),
            status=PaymentStatus(data['status']),
            charge=Decimal(data.get('charge', '0')),
            is_prepayment=data.get('isPrepayment', False),
        )


@dataclass
class Loan(StorageRecord):
    """A disbursed loan with its repayment schedule and payment history"""
    application_id: str
    customer_id: str
    loan_product_id: str
    principal_amount: Decimal
    interest_rate: Decimal              # Annual, in percent
    tenure_months: int
    emi_amount: Decimal
    total_interest: Decimal
    total_payable: Decimal
    outstanding_principal: Decimal
    total_outstanding: Decimal
    disbursement_date: date
    first_emi_date: date
    last_emi_date: date
    collateral_ids: List[str] = field(default_factory=list)
    total_collateral_value: Decimal = ZERO
    current_ltv: Decimal = ZERO
    schedule: List[Installment] = field(default_factory=list)
    payments: List[Payment] = field(default_factory=list)
    status: LoanStatus = LoanStatus.ACTIVE
    closure_date: Optional[date] = None
    days_overdue: int = 0
    overdue_amount: Decimal = ZERO
    margin_call_status: MarginCallStatus = MarginCallStatus.NONE
    last_margin_call_date: Optional[datetime] = None
    prepayment_amount: Decimal = ZERO
    prepayment_date: Optional[date] = None
    remarks: Optional[str] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def total_paid(self) -> Decimal:
        """Sum of all successful payments, charges included"""
        return sum(
            (p.amount for p in self.payments if p.status == PaymentStatus.SUCCESS), ZERO
        )

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
            'applicationId': self.application_id,
            'customerId': self.customer_id,
            'loanProductId': self.loan_product_id,
            'principalAmount': str(self.principal_amount),
            'interestRate': str(self.interest_rate),
            'tenureMonths': self.tenure_months,
            'emiAmount': str(self.emi_amount),
            'totalInterest': str(self.total_interest),
            'totalPayable': str(self.total_payable),
            'outstandingPrincipal': str(self.outstanding_principal),
            'totalOutstanding': str(self.total_outstanding),
            'collaterals': list(self.collateral_ids),
            'totalCollateralValue': str(self.total_collateral_value),
            'currentLtv': str(self.current_ltv),
            'repaymentSchedule': [installment.to_dict() for installment in self.schedule],
            'payments': [payment.to_dict() for payment in self.payments],
            'status': self.status.value,
            'disbursementDate': self.disbursement_date.isoformat(),
            'firstEmiDate': self.first_emi_date.isoformat(),
            'lastEmiDate': self.last_emi_date.isoformat(),
            'closureDate': iso(self.closure_date),
            'daysOverdue': self.days_overdue,
            'overdueAmount': str(self.overdue_amount),
            'marginCallStatus': self.margin_call_status.value,
            'lastMarginCallDate': iso(self.last_margin_call_date),
            'prepaymentAmount': str(self.prepayment_amount),
            'prepaymentDate': iso(self.prepayment_date),
            'remarks': self.remarks,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        def get_date(key: str) -> Optional[date]:
            if data.get(key):
                return date.fromisoformat(data[key])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['createdAt']),
            updated_at=datetime.fromisoformat(data['updatedAt']),
            application_id=data['applicationId'],
            customer_id=data['customerId'],
            loan_product_id=data['loanProductId'],
            principal_amount=Decimal(data['principalAmount']),
            interest_rate=Decimal(data['interestRate']),
            tenure_months=data['tenureMonths'],
            emi_amount=Decimal(data['emiAmount']),
            total_interest=Decimal(data['totalInterest']),
            total_payable=Decimal(data['totalPayable']),
            outstanding_principal=Decimal(data['outstandingPrincipal']),
            total_outstanding=Decimal(data['totalOutstanding']),
            disbursement_date=date.fromisoformat(data['disbursementDate']),
            first_emi_date=date.fromisoformat(data['firstEmiDate']),
            last_emi_date=date.fromisoformat(data['lastEmiDate']),
            collateral_ids=list(data.get('collaterals', [])),
            total_collateral_value=Decimal(data['totalCollateralValue']),
            current_ltv=Decimal(data['currentLtv']),
            schedule=[Installment.from_dict(item) for item in data.get('repaymentSchedule', [])],
            payments=[Payment.from_dict(item) for item in data.get('payments', [])],
            status=LoanStatus(data['status']),
            closure_date=get_date('closureDate'),
            days_overdue=data.get('daysOverdue', 0),
            overdue_amount=Decimal(data.get('overdueAmount', '0')),
            margin_call_status=MarginCallStatus(data.get('marginCallStatus', 'NONE')),
            last_margin_call_date=(
                datetime.fromisoformat(data['lastMarginCallDate'])
                if data.get('lastMarginCallDate') else None
            ),
            prepayment_amount=Decimal(data.get('prepaymentAmount', '0')),
            prepayment_date=get_date('prepaymentDate'),
            remarks=data.get('remarks'),
            version=data.get('version', 0),
        )


@dataclass
class PrepaymentResult:
    """Outcome of a prepayment"""
    payment: Payment
    prepayment_amount: Decimal
    prepayment_charge: Decimal
    effective_prepayment: Decimal
    new_outstanding: Decimal
    status: LoanStatus


def transition(loan: Loan, new_status: LoanStatus) -> None:
    """
    Move a loan to a new status

    Raises:
        InvalidLoanState: If the move is not a legal transition
    """
    if loan.status == new_status:
        return
    if new_status not in LOAN_TRANSITIONS[loan.status]:
        raise InvalidLoanState(
            f"Loan {loan.id} cannot move from {loan.status.value} to {new_status.value}"
        )
    loan.status = new_status


def originate_loan(
    loan_id: str,
    application_id: str,
    customer_id: str,
    loan_product_id: str,
    principal: Numeric,
    annual_rate_percent: Numeric,
    tenure_months: int,
    disbursement_date: date,
    now: datetime,
    collateral_ids: Optional[List[str]] = None,
    total_collateral_value: Numeric = ZERO,
    first_emi_date: Optional[date] = None
) -> Loan:
    """
    Create an ACTIVE loan with its full repayment schedule

    The first EMI falls one month after disbursement unless given.
    """
    principal = round_money(require_positive(principal, "Principal"))
    annual_rate_percent = to_decimal(annual_rate_percent)
    emi = calculate_emi(principal, annual_rate_percent, tenure_months)
    first_emi_date = first_emi_date or add_months(disbursement_date, 1)
    schedule = generate_schedule(principal, annual_rate_percent, tenure_months, emi, first_emi_date)
    payable = total_payable(schedule)

    loan = Loan(
        id=loan_id,
        created_at=now,
        updated_at=now,
        application_id=application_id,
        customer_id=customer_id,
        loan_product_id=loan_product_id,
        principal_amount=principal,
        interest_rate=annual_rate_percent,
        tenure_months=tenure_months,
        emi_amount=emi,
        total_interest=payable - principal,
        total_payable=payable,
        outstanding_principal=principal,
        total_outstanding=payable,
        disbursement_date=disbursement_date,
        first_emi_date=first_emi_date,
        last_emi_date=schedule[-1].due_date,
        collateral_ids=list(collateral_ids or []),
        total_collateral_value=round_money(total_collateral_value),
        schedule=schedule
    )
    refresh_balances(loan)
    return loan


def refresh_balances(loan: Loan) -> None:
    """
    Recompute the derived balances of a loan

    total_outstanding is the total payable less every successful payment's
    applied amount. outstanding_principal follows the schedule's running
    balance: the ``outstanding_after`` of the last PAID installment, less any
    prepaid principal. Both are floored at zero.
    """
    successful = [p for p in loan.payments if p.status == PaymentStatus.SUCCESS]
    applied = sum((p.applied_amount for p in successful), ZERO)
    prepaid = sum((p.applied_amount for p in successful if p.is_prepayment), ZERO)

    running_balance = loan.principal_amount
    for installment in loan.schedule:
        if not installment.is_paid:
            break
        running_balance = installment.outstanding_after

    loan.total_outstanding = max(ZERO, loan.total_payable - applied)
    loan.outstanding_principal = max(ZERO, running_balance - prepaid)
    update_ltv(loan)


def update_ltv(loan: Loan, total_collateral_value: Optional[Numeric] = None) -> Decimal:
    """Recompute current LTV, optionally against a new collateral value"""
    if total_collateral_value is not None:
        loan.total_collateral_value = round_money(total_collateral_value)
    if loan.total_collateral_value > ZERO:
        loan.current_ltv = round_money(loan.total_outstanding / loan.total_collateral_value * HUNDRED)
    return loan.current_ltv


def _validate_amount(amount: Numeric) -> Decimal:
    amount = require_positive(amount, "Payment amount", error=InvalidAmount)
    if amount != round_money(amount):
        raise InvalidAmount(f"Payment amount {amount} has more than 2 decimal places")
    return amount


def _validate_mode(mode: Union[PaymentMode, str]) -> PaymentMode:
    try:
        return PaymentMode(mode)
    except ValueError:
        raise InvalidInput(f"Unknown payment mode {mode!r}")


def record_payment(
    loan: Loan,
    amount: Numeric,
    mode: Union[PaymentMode, str],
    reference_number: Optional[str],
    payment_date: date,
    payment_id: Optional[str] = None
) -> Payment:
    """
    Apply a payment to a loan's schedule, oldest installment first

    Each unpaid installment absorbs up to its remaining EMI; the first
    installment the payment cannot clear becomes PARTIALLY_PAID and
    allocation stops there. The loan closes once nothing is outstanding,
    and an OVERDUE loan with no OVERDUE installment left returns to ACTIVE.

    Raises:
        InvalidLoanState: If the loan is not ACTIVE or OVERDUE
        InvalidAmount: If the amount is not positive
    """
    if loan.status not in (LoanStatus.ACTIVE, LoanStatus.OVERDUE):
        raise InvalidLoanState(
            f"Cannot record payment for loan {loan.id} in status {loan.status.value}"
        )
    amount = _validate_amount(amount)
    mode = _validate_mode(mode)

    remaining = amount
    covered = []
    for installment in loan.schedule:
        if remaining <= ZERO:
            break
        if installment.is_paid:
            continue

        due = installment.amount_due
        if remaining >= due:
            installment.paid_amount = installment.emi_amount
            installment.status = InstallmentStatus.PAID
            installment.paid_date = payment_date
            installment.payment_reference_number = reference_number
            remaining -= due
        else:
            installment.paid_amount += remaining
            installment.status = InstallmentStatus.PARTIALLY_PAID
            installment.payment_reference_number = reference_number
            remaining = ZERO
        covered.append(installment.installment_number)

    payment = Payment(
        id=payment_id or str(uuid.uuid4()),
        amount=amount,
        payment_date=payment_date,
        mode=mode,
        reference_number=reference_number,
        installments_covered=tuple(covered)
    )
    loan.payments.append(payment)
    refresh_balances(loan)

    if loan.total_outstanding <= ZERO:
        transition(loan, LoanStatus.CLOSED)
        loan.closure_date = payment_date
        loan.days_overdue = 0
        loan.overdue_amount = ZERO
    elif loan.status == LoanStatus.OVERDUE and not any(
        i.status == InstallmentStatus.OVERDUE for i in loan.schedule
    ):
        transition(loan, LoanStatus.ACTIVE)
        loan.days_overdue = 0
        loan.overdue_amount = ZERO

    return payment


def prepay(
    loan: Loan,
    amount: Numeric,
    mode: Union[PaymentMode, str],
    reference_number: Optional[str],
    product: LoanProduct,
    payment_date: date,
    payment_id: Optional[str] = None
) -> PrepaymentResult:
    """
    Pay down an ACTIVE loan ahead of schedule

    The product's prepayment charge is deducted first; the rest reduces both
    the outstanding principal and the total outstanding. No installment is
    retired. A loan with nothing left outstanding is FORECLOSED.

    Raises:
        InvalidLoanState: If the loan is not ACTIVE
        InvalidAmount: If the amount is not positive
    """
    if loan.status != LoanStatus.ACTIVE:
        raise InvalidLoanState(f"Loan {loan.id} must be ACTIVE for prepayment, is {loan.status.value}")
    amount = _validate_amount(amount)
    mode = _validate_mode(mode)

    charge = product.prepayment_charge(amount)
    effective = amount - charge

    payment = Payment(
        id=payment_id or str(uuid.uuid4()),
        amount=amount,
        payment_date=payment_date,
        mode=mode,
        reference_number=reference_number,
        charge=charge,
        is_prepayment=True
    )
    loan.payments.append(payment)
    loan.prepayment_amount += amount
    loan.prepayment_date = payment_date
    refresh_balances(loan)

    if loan.total_outstanding <= ZERO:
        transition(loan, LoanStatus.FORECLOSED)
        loan.closure_date = payment_date

    return PrepaymentResult(
        payment=payment,
        prepayment_amount=amount,
        prepayment_charge=charge,
        effective_prepayment=effective,
        new_outstanding=loan.total_outstanding,
        status=loan.status
    )


def settle(loan: Loan, settlement_date: date, remarks: Optional[str] = None) -> Loan:
    """Close an open loan by negotiated settlement"""
    transition(loan, LoanStatus.SETTLED)
    loan.closure_date = settlement_date
    if remarks:
        loan.remarks = remarks
    return loan


def write_off(loan: Loan, write_off_date: date, remarks: Optional[str] = None) -> Loan:
    """Write off an open loan as uncollectible"""
    transition(loan, LoanStatus.WRITTEN_OFF)
    loan.closure_date = write_off_date
    if remarks:
        loan.remarks = remarks
    return loan


def trigger_margin_call(loan: Loan, now: datetime) -> bool:
    """Flag a margin call on an ACTIVE loan; other statuses are left alone"""
    if loan.status != LoanStatus.ACTIVE:
        return False
    loan.margin_call_status = MarginCallStatus.TRIGGERED
    loan.last_margin_call_date = now
    return True


def resolve_margin_call(loan: Loan) -> Loan:
    if loan.margin_call_status != MarginCallStatus.TRIGGERED:
        raise InvalidLoanState(f"Loan {loan.id} has no triggered margin call")
    loan.margin_call_status = MarginCallStatus.RESOLVED
    return loan


def mark_liquidated(loan: Loan) -> Loan:
    if loan.margin_call_status != MarginCallStatus.TRIGGERED:
        raise InvalidLoanState(f"Loan {loan.id} has no triggered margin call")
    loan.margin_call_status = MarginCallStatus.LIQUIDATED
    return loan


def schedule_summary(loan: Loan) -> Dict[str, int]:
    """Installment counts by status"""
    counts = {status: 0 for status in InstallmentStatus}
    for installment in loan.schedule:
        counts[installment.status] += 1
    return {
        'totalInstallments': len(loan.schedule),
        'paidInstallments': counts[InstallmentStatus.PAID],
        'pendingInstallments': counts[InstallmentStatus.PENDING],
        'partiallyPaidInstallments': counts[InstallmentStatus.PARTIALLY_PAID],
        'overdueInstallments': counts[InstallmentStatus.OVERDUE],
    }


def payment_summary(loan: Loan) -> Dict[str, Any]:
    return {
        'totalPayments': len(loan.payments),
        'totalAmountPaid': loan.total_paid,
        'totalOutstanding': loan.total_outstanding,
    }


def portfolio_summary(loans: List[Loan]) -> Dict[str, Dict[str, Any]]:
    """Count, disbursed principal and outstanding per loan status"""
    summary: Dict[str, Dict[str, Any]] = {}
    for loan in loans:
        group = summary.setdefault(loan.status.value, {
            'count': 0,
            'totalDisbursed': ZERO,
            'totalOutstanding': ZERO,
        })
        group['count'] += 1
        group['totalDisbursed'] += loan.principal_amount
        group['totalOutstanding'] += loan.total_outstanding
    return summary
