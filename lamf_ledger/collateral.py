"""
Collateral Valuation & Margin Monitor

A Collateral is one pledged mutual-fund holding. Its current value and the loan
amount it supports are always recomputed together from the latest NAV, and
every revaluation is appended to an immutable NAV history.

The margin check compares collateral value against loan exposure and raises
a margin call when coverage drops below the threshold. Clearing a margin
call is a separate, explicit resolution step.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from .errors import (
    InvalidInput, DivisionUndefined, InvalidLoanState
)
from .money import (
    Numeric, ZERO, to_decimal, round_money, percent_of, require_positive
)
from .storage import StorageRecord


DEFAULT_MARGIN_THRESHOLD = Decimal('0.8')


class FundType(Enum):
    """Mutual fund categories accepted as collateral"""
    EQUITY = "EQUITY"
    DEBT = "DEBT"
    HYBRID = "HYBRID"
    LIQUID = "LIQUID"
    ELSS = "ELSS"
    INDEX = "INDEX"


class LienStatus(Enum):
    """Lien marked with the registrar on the pledged units"""
    PENDING = "PENDING"
    MARKED = "MARKED"
    RELEASED = "RELEASED"
    INVOKED = "INVOKED"


class CollateralStatus(Enum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"
    LIQUIDATED = "LIQUIDATED"
    PARTIALLY_RELEASED = "PARTIALLY_RELEASED"


@dataclass
class MutualFund:
    """Descriptor of the pledged fund holding"""
    fund_name: str
    fund_house: str
    scheme_code: str
    folio_number: str
    isin: str
    fund_type: FundType

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fundName': self.fund_name,
            'fundHouse': self.fund_house,
            'schemeCode': self.scheme_code,
            'folioNumber': self.folio_number,
            'isin': self.isin,
            'fundType': self.fund_type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MutualFund':
        return cls(
            fund_name=data['fundName'],
            fund_house=data['fundHouse'],
            scheme_code=data['schemeCode'],
            folio_number=data['folioNumber'],
            isin=data['isin'],
            fund_type=FundType(data['fundType']),
        )


@dataclass(frozen=True)
class NavRecord:
    """Immutable NAV history entry"""
    nav: Decimal
    value: Decimal
    recorded_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nav': str(self.nav),
            'value': str(self.value),
            'recordedAt': self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NavRecord':
        return cls(
            nav=Decimal(data['nav']),
            value=Decimal(data['value']),
            recorded_at=datetime.fromisoformat(data['recordedAt']),
        )


@dataclass
class Collateral(StorageRecord):
    """One pledged mutual-fund holding"""
    customer_id: str
    mutual_fund: MutualFund
    units: Decimal
    nav_at_pledge: Decimal
    current_nav: Decimal
    value_at_pledge: Decimal
    current_value: Decimal
    ltv_percent: Decimal
    eligible_loan_amount: Decimal
    loan_application_id: Optional[str] = None
    loan_id: Optional[str] = None
    lien_status: LienStatus = LienStatus.PENDING
    lien_mark_date: Optional[datetime] = None
    lien_reference_number: Optional[str] = None
    status: CollateralStatus = CollateralStatus.ACTIVE
    nav_history: List[NavRecord] = field(default_factory=list)
    margin_call_triggered: bool = False
    margin_call_date: Optional[datetime] = None
    notes: Optional[str] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == CollateralStatus.ACTIVE

    def link_application(self, application_id: str) -> None:
        """Attach to an application; the link is set once and never reassigned"""
        if self.loan_application_id and self.loan_application_id != application_id:
            raise InvalidInput(
                f"Collateral {self.id} is already pledged to application {self.loan_application_id}"
            )
        self.loan_application_id = application_id

    def link_loan(self, loan_id: str) -> None:
        """Attach to a loan; the link is set once and never reassigned"""
        if self.loan_id and self.loan_id != loan_id:
            raise InvalidInput(f"Collateral {self.id} already secures loan {self.loan_id}")
        self.loan_id = loan_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
            'customerId': self.customer_id,
            'loanApplicationId': self.loan_application_id,
            'loanId': self.loan_id,
            'mutualFund': {
                **self.mutual_fund.to_dict(),
                'units': str(self.units),
                'navAtPledge': str(self.nav_at_pledge),
                'currentNav': str(self.current_nav),
                'valueAtPledge': str(self.value_at_pledge),
                'currentValue': str(self.current_value),
            },
            'ltvPercent': str(self.ltv_percent),
            'eligibleLoanAmount': str(self.eligible_loan_amount),
            'lienStatus': self.lien_status.value,
            'lienMarkDate': self.lien_mark_date.isoformat() if self.lien_mark_date else None,
            'lienReferenceNumber': self.lien_reference_number,
            'status': self.status.value,
            'navHistory': [record.to_dict() for record in self.nav_history],
            'marginCallTriggered': self.margin_call_triggered,
            'marginCallDate': self.margin_call_date.isoformat() if self.margin_call_date else None,
            'notes': self.notes,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Collateral':
        fund = data['mutualFund']

        def get_datetime(key: str) -> Optional[datetime]:
            if data.get(key):
                return datetime.fromisoformat(data[key])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['createdAt']),
            updated_at=datetime.fromisoformat(data['updatedAt']),
            customer_id=data['customerId'],
            mutual_fund=MutualFund.from_dict(fund),
            units=Decimal(fund['units']),
            nav_at_pledge=Decimal(fund['navAtPledge']),
            current_nav=Decimal(fund['currentNav']),
            value_at_pledge=Decimal(fund['valueAtPledge']),
            current_value=Decimal(fund['currentValue']),
            ltv_percent=Decimal(data['ltvPercent']),
            eligible_loan_amount=Decimal(data['eligibleLoanAmount']),
            loan_application_id=data.get('loanApplicationId'),
            loan_id=data.get('loanId'),
            lien_status=LienStatus(data['lienStatus']),
            lien_mark_date=get_datetime('lienMarkDate'),
            lien_reference_number=data.get('lienReferenceNumber'),
            status=CollateralStatus(data['status']),
            nav_history=[NavRecord.from_dict(item) for item in data.get('navHistory', [])],
            margin_call_triggered=data.get('marginCallTriggered', False),
            margin_call_date=get_datetime('marginCallDate'),
            notes=data.get('notes'),
            version=data.get('version', 0),
        )


def _validate_ltv(ltv_percent: Numeric) -> Decimal:
    ltv_percent = to_decimal(ltv_percent)
    if ltv_percent <= ZERO or ltv_percent > Decimal('100'):
        raise InvalidInput(f"LTV must be within (0, 100], got {ltv_percent}")
    return ltv_percent


def create_collateral(
    collateral_id: str,
    customer_id: str,
    mutual_fund: MutualFund,
    units: Numeric,
    nav_at_pledge: Numeric,
    ltv_percent: Numeric,
    now: datetime,
    current_nav: Optional[Numeric] = None,
    loan_application_id: Optional[str] = None
) -> Collateral:
    """
    Build a pledged holding with its opening valuation

    The current NAV defaults to the NAV at pledge. The opening NAV is the
    first entry of the NAV history.
    """
    units = require_positive(units, "Units")
    nav_at_pledge = require_positive(nav_at_pledge, "NAV at pledge")
    current_nav = require_positive(
        current_nav if current_nav is not None else nav_at_pledge, "Current NAV"
    )
    ltv_percent = _validate_ltv(ltv_percent)

    current_value = round_money(units * current_nav)
    return Collateral(
        id=collateral_id,
        created_at=now,
        updated_at=now,
        customer_id=customer_id,
        mutual_fund=mutual_fund,
        units=units,
        nav_at_pledge=nav_at_pledge,
        current_nav=current_nav,
        value_at_pledge=round_money(units * nav_at_pledge),
        current_value=current_value,
        ltv_percent=ltv_percent,
        eligible_loan_amount=percent_of(current_value, ltv_percent),
        loan_application_id=loan_application_id,
        nav_history=[NavRecord(nav=current_nav, value=current_value, recorded_at=now)]
    )


def revalue(collateral: Collateral, new_nav: Numeric, now: datetime) -> Collateral:
    """
    Revalue a holding at a new NAV

    Sets the current NAV, recomputes current value and eligible loan amount
    together, and appends to the NAV history.

    Raises:
        InvalidInput: If the NAV is not positive
    """
    new_nav = require_positive(new_nav, "NAV")

    current_value = round_money(collateral.units * new_nav)
    collateral.current_nav = new_nav
    collateral.current_value = current_value
    collateral.eligible_loan_amount = percent_of(current_value, collateral.ltv_percent)
    collateral.nav_history.append(NavRecord(nav=new_nav, value=current_value, recorded_at=now))
    collateral.updated_at = now
    return collateral


def apply_ltv(collateral: Collateral, ltv_percent: Numeric, now: datetime) -> Collateral:
    """
    Re-derive the eligible loan amount under a new LTV

    Used when a holding is pledged to an application: the product's LTV
    replaces whatever LTV the holding was registered with.
    """
    collateral.ltv_percent = _validate_ltv(ltv_percent)
    collateral.eligible_loan_amount = percent_of(collateral.current_value, collateral.ltv_percent)
    collateral.updated_at = now
    return collateral


def coverage_ratio(collateral: Collateral, loan_outstanding: Numeric) -> Decimal:
    """Collateral value per unit of loan exposure"""
    loan_outstanding = to_decimal(loan_outstanding)
    if loan_outstanding == ZERO:
        raise DivisionUndefined(
            f"Coverage of collateral {collateral.id} is undefined against zero outstanding"
        )
    return collateral.current_value / loan_outstanding


def check_margin_call(
    collateral: Collateral,
    loan_outstanding: Numeric,
    now: datetime,
    margin_threshold: Numeric = DEFAULT_MARGIN_THRESHOLD
) -> bool:
    """
    Decide whether the holding no longer covers the loan

    Triggers (and stamps) a margin call when the coverage ratio falls below
    the threshold. A ratio at or above the threshold returns False and leaves
    an earlier trigger in place.

    Raises:
        DivisionUndefined: If loan_outstanding is zero
    """
    ratio = coverage_ratio(collateral, loan_outstanding)
    if ratio < to_decimal(margin_threshold):
        collateral.margin_call_triggered = True
        collateral.margin_call_date = now
        collateral.updated_at = now
        return True
    return False


def mark_lien(collateral: Collateral, now: datetime, lien_reference_number: Optional[str] = None) -> Collateral:
    """Record the lien as marked with the registrar"""
    if collateral.lien_status == LienStatus.MARKED:
        return collateral
    if collateral.lien_status != LienStatus.PENDING:
        raise InvalidInput(
            f"Cannot mark lien on collateral {collateral.id} in lien status {collateral.lien_status.value}"
        )
    collateral.lien_status = LienStatus.MARKED
    collateral.lien_mark_date = now
    if lien_reference_number:
        collateral.lien_reference_number = lien_reference_number
    collateral.updated_at = now
    return collateral


def release_collateral(collateral: Collateral, loan_status: Optional[str], now: datetime) -> Collateral:
    """
    Release the pledge back to the customer

    Args:
        loan_status: Status value of the linked loan, or None when no loan is linked

    Raises:
        InvalidLoanState: If the linked loan is still open
    """
    if collateral.status != CollateralStatus.ACTIVE:
        raise InvalidInput(f"Collateral {collateral.id} is {collateral.status.value}, cannot release")
    if collateral.loan_id and loan_status not in ('CLOSED', 'SETTLED', 'FORECLOSED'):
        raise InvalidLoanState(
            f"Cannot release collateral {collateral.id} while loan {collateral.loan_id} is {loan_status}"
        )

    collateral.status = CollateralStatus.RELEASED
    collateral.lien_status = LienStatus.RELEASED
    # Release is the one point where the pledge links are cleared
    collateral.loan_application_id = None
    collateral.loan_id = None
    collateral.updated_at = now
    return collateral


def invoke_lien(collateral: Collateral, now: datetime) -> Collateral:
    """Liquidate the pledged units on an unresolved margin call"""
    if collateral.status != CollateralStatus.ACTIVE:
        raise InvalidInput(f"Collateral {collateral.id} is {collateral.status.value}, cannot liquidate")
    if not collateral.margin_call_triggered:
        raise InvalidInput(f"Collateral {collateral.id} has no open margin call")

    collateral.lien_status = LienStatus.INVOKED
    collateral.status = CollateralStatus.LIQUIDATED
    collateral.updated_at = now
    return collateral


def clear_margin_call(collateral: Collateral, now: datetime) -> Collateral:
    collateral.margin_call_triggered = False
    collateral.updated_at = now
    return collateral


def summarize_by_fund_type(collaterals: List[Collateral]) -> List[Dict[str, Any]]:
    """Totals of active collateral per fund type, largest value first"""
    groups: Dict[FundType, Dict[str, Any]] = {}
    for collateral in collaterals:
        if not collateral.is_active:
            continue
        group = groups.setdefault(collateral.mutual_fund.fund_type, {
            'fundType': collateral.mutual_fund.fund_type.value,
            'count': 0,
            'totalUnits': ZERO,
            'totalValue': ZERO,
            'totalEligibleAmount': ZERO,
        })
        group['count'] += 1
        group['totalUnits'] += collateral.units
        group['totalValue'] += collateral.current_value
        group['totalEligibleAmount'] += collateral.eligible_loan_amount

    return sorted(groups.values(), key=lambda g: g['totalValue'], reverse=True)
