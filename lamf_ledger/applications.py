"""
Loan Application Module

Application data model and state machine, from DRAFT through review and
approval to disbursement, where the application spawns its one Loan.
"""

from decimal import Decimal
from datetime import datetime, date, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from .amortization import add_months
from .collateral import Collateral, apply_ltv, mark_lien
from .errors import (
    InvalidInput, InvalidApplicationState, InsufficientCollateral
)
from .loans import Loan, originate_loan
from .money import Numeric, ZERO, percent_of, round_money, require_positive
from .products import LoanProduct
from .storage import StorageRecord


DEFAULT_EXPIRY_DAYS = 30


class ApplicationStatus(Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    DOCUMENTS_PENDING = "DOCUMENTS_PENDING"
    COLLATERAL_VERIFICATION = "COLLATERAL_VERIFICATION"
    CREDIT_CHECK = "CREDIT_CHECK"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DISBURSED = "DISBURSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES = (
    ApplicationStatus.DISBURSED, ApplicationStatus.REJECTED,
    ApplicationStatus.CANCELLED, ApplicationStatus.EXPIRED
)

REVIEW_STAGES = (
    ApplicationStatus.DOCUMENTS_PENDING,
    ApplicationStatus.COLLATERAL_VERIFICATION,
    ApplicationStatus.CREDIT_CHECK
)

# States in which collateral may still be pledged to the application
COLLATERAL_OPEN_STATUSES = (
    ApplicationStatus.DRAFT, ApplicationStatus.SUBMITTED,
    ApplicationStatus.DOCUMENTS_PENDING, ApplicationStatus.COLLATERAL_VERIFICATION
)

_CLOSING = {ApplicationStatus.REJECTED, ApplicationStatus.CANCELLED, ApplicationStatus.EXPIRED}

APPLICATION_TRANSITIONS = {
    ApplicationStatus.DRAFT: {ApplicationStatus.SUBMITTED} | _CLOSING,
    ApplicationStatus.SUBMITTED: {ApplicationStatus.UNDER_REVIEW} | _CLOSING,
    ApplicationStatus.UNDER_REVIEW: set(REVIEW_STAGES) | _CLOSING,
    ApplicationStatus.DOCUMENTS_PENDING: (
        set(REVIEW_STAGES) | {ApplicationStatus.UNDER_REVIEW, ApplicationStatus.APPROVED} | _CLOSING
    ),
    ApplicationStatus.COLLATERAL_VERIFICATION: (
        set(REVIEW_STAGES) | {ApplicationStatus.UNDER_REVIEW, ApplicationStatus.APPROVED} | _CLOSING
    ),
    ApplicationStatus.CREDIT_CHECK: (
        set(REVIEW_STAGES) | {ApplicationStatus.UNDER_REVIEW, ApplicationStatus.APPROVED} | _CLOSING
    ),
    ApplicationStatus.APPROVED: {ApplicationStatus.DISBURSED} | _CLOSING,
    ApplicationStatus.REJECTED: set(),
    ApplicationStatus.DISBURSED: set(),
    ApplicationStatus.CANCELLED: set(),
    ApplicationStatus.EXPIRED: set(),
}


@dataclass(frozen=True)
class StatusChange:
    """One entry of an application's status history"""
    status: ApplicationStatus
    changed_at: datetime
    remarks: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'changedAt': self.changed_at.isoformat(),
            'remarks': self.remarks,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatusChange':
        return cls(
            status=ApplicationStatus(data['status']),
            changed_at=datetime.fromisoformat(data['changedAt']),
            remarks=data.get('remarks'),
        )


@dataclass
class LoanApplication(StorageRecord):
    """A customer's request for a loan against pledged mutual funds"""
    customer_id: str
    loan_product_id: str
    requested_amount: Decimal
    requested_tenure_months: int
    interest_rate: Decimal
    purpose: Optional[str] = None
    approved_amount: Optional[Decimal] = None
    approved_tenure_months: Optional[int] = None
    collateral_ids: List[str] = field(default_factory=list)
    total_collateral_value: Decimal = ZERO
    eligible_loan_amount: Decimal = ZERO
    processing_fee: Decimal = ZERO
    status: ApplicationStatus = ApplicationStatus.DRAFT
    status_history: List[StatusChange] = field(default_factory=list)
    submitted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    disbursement_date: Optional[date] = None
    disbursement_amount: Optional[Decimal] = None
    disbursement_account_number: Optional[str] = None
    disbursement_ifsc: Optional[str] = None
    disbursement_reference_number: Optional[str] = None
    loan_id: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        def text(value):
            return str(value) if value is not None else None

        def iso(value):
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
            'customerId': self.customer_id,
            'loanProductId': self.loan_product_id,
            'requestedAmount': str(self.requested_amount),
            'approvedAmount': text(self.approved_amount),
            'requestedTenureMonths': self.requested_tenure_months,
            'approvedTenureMonths': self.approved_tenure_months,
            'interestRate': str(self.interest_rate),
            'purpose': self.purpose,
            'collaterals': list(self.collateral_ids),
            'totalCollateralValue': str(self.total_collateral_value),
            'eligibleLoanAmount': str(self.eligible_loan_amount),
            'processingFee': str(self.processing_fee),
            'status': self.status.value,
            'statusHistory': [change.to_dict() for change in self.status_history],
            'submittedAt': iso(self.submitted_at),
            'expiresAt': iso(self.expires_at),
            'approvalDate': iso(self.approval_date),
            'rejectionReason': self.rejection_reason,
            'disbursementDate': iso(self.disbursement_date),
            'disbursementAmount': text(self.disbursement_amount),
            'disbursementAccountNumber': self.disbursement_account_number,
            'disbursementIfsc': self.disbursement_ifsc,
            'disbursementReferenceNumber': self.disbursement_reference_number,
            'loanId': self.loan_id,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanApplication':
        def get_decimal(key: str) -> Optional[Decimal]:
            return Decimal(data[key]) if data.get(key) is not None else None

        def get_datetime(key: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[key]) if data.get(key) else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['createdAt']),
            updated_at=datetime.fromisoformat(data['updatedAt']),
            customer_id=data['customerId'],
            loan_product_id=data['loanProductId'],
            requested_amount=Decimal(data['requestedAmount']),
            requested_tenure_months=data['requestedTenureMonths'],
            interest_rate=Decimal(data['interestRate']),
            purpose=data.get('purpose'),
            approved_amount=get_decimal('approvedAmount'),
            approved_tenure_months=data.get('approvedTenureMonths'),
            collateral_ids=list(data.get('collaterals', [])),
            total_collateral_value=Decimal(data['totalCollateralValue']),
            eligible_loan_amount=Decimal(data['eligibleLoanAmount']),
            processing_fee=Decimal(data.get('processingFee', '0')),
            status=ApplicationStatus(data['status']),
            status_history=[StatusChange.from_dict(item) for item in data.get('statusHistory', [])],
            submitted_at=get_datetime('submittedAt'),
            expires_at=get_datetime('expiresAt'),
            approval_date=get_datetime('approvalDate'),
            rejection_reason=data.get('rejectionReason'),
            disbursement_date=(
                date.fromisoformat(data['disbursementDate']) if data.get('disbursementDate') else None
            ),
            disbursement_amount=get_decimal('disbursementAmount'),
            disbursement_account_number=data.get('disbursementAccountNumber'),
            disbursement_ifsc=data.get('disbursementIfsc'),
            disbursement_reference_number=data.get('disbursementReferenceNumber'),
            loan_id=data.get('loanId'),
            version=data.get('version', 0),
        )


def _set_status(
    application: LoanApplication,
    new_status: ApplicationStatus,
    now: datetime,
    remarks: Optional[str] = None
) -> None:
    if new_status not in APPLICATION_TRANSITIONS[application.status]:
        raise InvalidApplicationState(
            f"Application {application.id} cannot move from "
            f"{application.status.value} to {new_status.value}"
        )
    application.status = new_status
    application.status_history.append(StatusChange(new_status, now, remarks))
    application.updated_at = now


def _check_collateral(application: LoanApplication, collateral: Collateral, product: LoanProduct) -> None:
    if not collateral.is_active:
        raise InvalidInput(f"Collateral {collateral.id} is {collateral.status.value}")
    if collateral.customer_id != application.customer_id:
        raise InvalidInput(
            f"Collateral {collateral.id} belongs to customer {collateral.customer_id}"
        )
    if collateral.loan_application_id and collateral.loan_application_id != application.id:
        raise InvalidInput(
            f"Collateral {collateral.id} is already pledged to application {collateral.loan_application_id}"
        )
    if not product.accepts_fund_type(collateral.mutual_fund.fund_type):
        raise InvalidInput(
            f"Fund type {collateral.mutual_fund.fund_type.value} is not eligible "
            f"for product {product.product_code}"
        )


def recompute_collateral_totals(application: LoanApplication, collaterals: List[Collateral]) -> None:
    """Re-aggregate total value and eligible amount over the pledged holdings"""
    application.total_collateral_value = sum((c.current_value for c in collaterals), ZERO)
    application.eligible_loan_amount = sum((c.eligible_loan_amount for c in collaterals), ZERO)


def create_application(
    application_id: str,
    customer_id: str,
    product: LoanProduct,
    requested_amount: Numeric,
    requested_tenure_months: int,
    collaterals: List[Collateral],
    now: datetime,
    purpose: Optional[str] = None,
    expiry_days: int = DEFAULT_EXPIRY_DAYS
) -> LoanApplication:
    """
    Open a DRAFT application against a product and pledged holdings

    Validates the request against the product limits and each holding's fund
    type, aggregates the collateral under the product's LTV, and computes the
    processing fee and the expiry date. Each holding takes the product's LTV
    once the application is accepted.

    Raises:
        InvalidInput: If the request or a holding is not acceptable
        InsufficientCollateral: If the request exceeds the eligible amount
    """
    requested_amount = round_money(require_positive(requested_amount, "Requested amount"))
    product.validate_request(requested_amount, requested_tenure_months)
    if not collaterals:
        raise InvalidInput("At least one collateral is required")

    application = LoanApplication(
        id=application_id,
        created_at=now,
        updated_at=now,
        customer_id=customer_id,
        loan_product_id=product.id,
        requested_amount=requested_amount,
        requested_tenure_months=requested_tenure_months,
        interest_rate=product.interest_rate,
        purpose=purpose,
        processing_fee=product.processing_fee(requested_amount),
        expires_at=now + timedelta(days=expiry_days),
        status_history=[StatusChange(ApplicationStatus.DRAFT, now, "Application created")]
    )

    for collateral in collaterals:
        _check_collateral(application, collateral, product)
    application.total_collateral_value = sum((c.current_value for c in collaterals), ZERO)
    application.eligible_loan_amount = sum(
        (percent_of(c.current_value, product.ltv_percent) for c in collaterals), ZERO
    )
    if requested_amount > application.eligible_loan_amount:
        raise InsufficientCollateral(
            f"Requested amount {requested_amount} exceeds eligible amount "
            f"{application.eligible_loan_amount}"
        )

    for collateral in collaterals:
        apply_ltv(collateral, product.ltv_percent, now)
        collateral.link_application(application.id)
    application.collateral_ids = [c.id for c in collaterals]
    return application


def add_collateral(
    application: LoanApplication,
    collateral: Collateral,
    existing: List[Collateral],
    product: LoanProduct,
    now: datetime
) -> LoanApplication:
    """
    Pledge one more holding to an application still gathering collateral

    Args:
        existing: The holdings already pledged to the application
    """
    if application.status not in COLLATERAL_OPEN_STATUSES:
        raise InvalidApplicationState(
            f"Cannot add collateral to application {application.id} in status {application.status.value}"
        )
    if collateral.id in application.collateral_ids:
        raise InvalidInput(f"Collateral {collateral.id} is already pledged to application {application.id}")
    _check_collateral(application, collateral, product)

    apply_ltv(collateral, product.ltv_percent, now)
    collateral.link_application(application.id)
    application.collateral_ids.append(collateral.id)
    recompute_collateral_totals(application, list(existing) + [collateral])
    application.updated_at = now
    return application


def submit(application: LoanApplication, now: datetime, remarks: Optional[str] = None) -> LoanApplication:
    _set_status(application, ApplicationStatus.SUBMITTED, now, remarks)
    application.submitted_at = now
    return application


def update_status(
    application: LoanApplication,
    new_status: ApplicationStatus,
    now: datetime,
    remarks: Optional[str] = None
) -> LoanApplication:
    """
    Move an application through review

    Approval, rejection and disbursement carry side effects and have their
    own operations.

    Raises:
        InvalidApplicationState: If the move is not a legal transition
    """
    if new_status in (ApplicationStatus.APPROVED, ApplicationStatus.DISBURSED, ApplicationStatus.REJECTED):
        raise InvalidApplicationState(f"Use the dedicated operation to move to {new_status.value}")
    if new_status == ApplicationStatus.SUBMITTED:
        return submit(application, now, remarks)
    _set_status(application, new_status, now, remarks)
    return application


def approve(
    application: LoanApplication,
    collaterals: List[Collateral],
    product: LoanProduct,
    now: datetime,
    approved_amount: Optional[Numeric] = None,
    approved_tenure_months: Optional[int] = None,
    remarks: Optional[str] = None
) -> LoanApplication:
    """
    Approve an application and mark liens on its collateral

    The approved amount and tenure default to the requested ones. The
    processing fee is recomputed on the approved amount.

    Raises:
        InvalidApplicationState: If the application is not in a review stage
        InsufficientCollateral: If the approved amount exceeds the eligible amount
    """
    if ApplicationStatus.APPROVED not in APPLICATION_TRANSITIONS[application.status]:
        raise InvalidApplicationState(
            f"Application {application.id} cannot be approved from {application.status.value}"
        )

    amount = round_money(require_positive(
        approved_amount if approved_amount is not None else application.requested_amount,
        "Approved amount"
    ))
    tenure = approved_tenure_months or application.requested_tenure_months
    product.validate_request(amount, tenure)

    recompute_collateral_totals(application, collaterals)
    if amount > application.eligible_loan_amount:
        raise InsufficientCollateral(
            f"Approved amount {amount} exceeds eligible amount {application.eligible_loan_amount}"
        )

    _set_status(application, ApplicationStatus.APPROVED, now, remarks)
    application.approved_amount = amount
    application.approved_tenure_months = tenure
    application.processing_fee = product.processing_fee(amount)
    application.approval_date = now

    for collateral in collaterals:
        mark_lien(collateral, now)
    return application


def reject(application: LoanApplication, reason: str, now: datetime) -> LoanApplication:
    _set_status(application, ApplicationStatus.REJECTED, now, reason)
    application.rejection_reason = reason
    return application


def cancel(application: LoanApplication, now: datetime, remarks: Optional[str] = None) -> LoanApplication:
    _set_status(application, ApplicationStatus.CANCELLED, now, remarks)
    return application


def expire_if_stale(application: LoanApplication, now: datetime) -> bool:
    """Expire an undisbursed application past its expiry date"""
    if application.is_terminal or application.expires_at is None or now <= application.expires_at:
        return False
    _set_status(application, ApplicationStatus.EXPIRED, now, "Application expired")
    return True


def disburse(
    application: LoanApplication,
    collaterals: List[Collateral],
    loan_id: str,
    disbursement_date: date,
    now: datetime,
    disbursement_account_number: Optional[str] = None,
    disbursement_ifsc: Optional[str] = None,
    disbursement_reference_number: Optional[str] = None,
    first_emi_offset_months: int = 1
) -> Loan:
    """
    Turn an APPROVED application into its Loan

    Every check runs before anything is mutated: the application must be
    APPROVED and the holdings must be exactly the pledged ones, still active
    and free of any other loan. The Loan is then originated, each holding is
    linked to it and the application moves to DISBURSED.

    Raises:
        InvalidApplicationState: If the application is not APPROVED
        InvalidInput: If the holdings do not match the application
    """
    if application.status != ApplicationStatus.APPROVED:
        raise InvalidApplicationState(
            f"Application {application.id} must be APPROVED before disbursement, "
            f"is {application.status.value}"
        )
    if sorted(c.id for c in collaterals) != sorted(application.collateral_ids):
        raise InvalidInput(f"Collateral set does not match application {application.id}")
    for collateral in collaterals:
        if not collateral.is_active:
            raise InvalidInput(f"Collateral {collateral.id} is {collateral.status.value}")
        if collateral.loan_id and collateral.loan_id != loan_id:
            raise InvalidInput(f"Collateral {collateral.id} already secures loan {collateral.loan_id}")

    recompute_collateral_totals(application, collaterals)
    loan = originate_loan(
        loan_id=loan_id,
        application_id=application.id,
        customer_id=application.customer_id,
        loan_product_id=application.loan_product_id,
        principal=application.approved_amount,
        annual_rate_percent=application.interest_rate,
        tenure_months=application.approved_tenure_months,
        disbursement_date=disbursement_date,
        now=now,
        collateral_ids=list(application.collateral_ids),
        total_collateral_value=application.total_collateral_value,
        first_emi_date=add_months(disbursement_date, first_emi_offset_months)
    )

    for collateral in collaterals:
        collateral.link_loan(loan.id)
        collateral.updated_at = now

    _set_status(application, ApplicationStatus.DISBURSED, now, f"Disbursed as loan {loan.id}")
    application.loan_id = loan.id
    application.disbursement_date = disbursement_date
    application.disbursement_amount = loan.principal_amount
    application.disbursement_account_number = disbursement_account_number
    application.disbursement_ifsc = disbursement_ifsc
    application.disbursement_reference_number = disbursement_reference_number
    return loan
