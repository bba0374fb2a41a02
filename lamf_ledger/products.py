"""
Loan product parameters

The catalog itself is owned by the surrounding system; the core only needs
the terms of the product an application was made under: rate, limits, LTV
and the fee percentages.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import List
from enum import Enum

from .collateral import FundType
from .errors import InvalidInput
from .money import Numeric, ZERO, HUNDRED, to_decimal, percent_of


class ProductStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DISCONTINUED = "DISCONTINUED"


@dataclass
class LoanProduct:
    """Terms of a loan-against-mutual-fund product"""
    id: str
    product_code: str
    product_name: str
    interest_rate: Decimal              # Annual, in percent
    min_loan_amount: Decimal
    max_loan_amount: Decimal
    min_tenure_months: int
    max_tenure_months: int
    ltv_percent: Decimal = Decimal('50')
    processing_fee_percent: Decimal = Decimal('1')
    prepayment_charge_percent: Decimal = ZERO
    eligible_fund_types: List[FundType] = field(default_factory=list)
    status: ProductStatus = ProductStatus.ACTIVE

    def __post_init__(self):
        for name in ('interest_rate', 'min_loan_amount', 'max_loan_amount', 'ltv_percent',
                     'processing_fee_percent', 'prepayment_charge_percent'):
            setattr(self, name, to_decimal(getattr(self, name)))

        if self.interest_rate < ZERO or self.interest_rate > HUNDRED:
            raise InvalidInput(f"Interest rate must be within [0, 100], got {self.interest_rate}")
        if self.ltv_percent <= ZERO or self.ltv_percent > HUNDRED:
            raise InvalidInput(f"LTV must be within (0, 100], got {self.ltv_percent}")
        if self.min_loan_amount < ZERO or self.max_loan_amount < self.min_loan_amount:
            raise InvalidInput("Loan amount limits are inconsistent")
        if self.min_tenure_months < 1 or self.max_tenure_months < self.min_tenure_months:
            raise InvalidInput("Tenure limits are inconsistent")

    @property
    def is_active(self) -> bool:
        return self.status == ProductStatus.ACTIVE

    def validate_request(self, amount: Numeric, tenure_months: int) -> None:
        """
        Check a requested amount and tenure against the product limits

        Raises:
            InvalidInput: If the product is not active or a limit is breached
        """
        if not self.is_active:
            raise InvalidInput(f"Loan product {self.product_code} is {self.status.value}")

        amount = to_decimal(amount)
        if amount < self.min_loan_amount or amount > self.max_loan_amount:
            raise InvalidInput(
                f"Loan amount must be between {self.min_loan_amount} and {self.max_loan_amount}"
            )
        if tenure_months < self.min_tenure_months or tenure_months > self.max_tenure_months:
            raise InvalidInput(
                f"Tenure must be between {self.min_tenure_months} and {self.max_tenure_months} months"
            )

    def accepts_fund_type(self, fund_type: FundType) -> bool:
        # An empty list means every fund type is eligible
        return not self.eligible_fund_types or fund_type in self.eligible_fund_types

    def processing_fee(self, amount: Numeric) -> Decimal:
        return percent_of(amount, self.processing_fee_percent)

    def prepayment_charge(self, amount: Numeric) -> Decimal:
        return percent_of(amount, self.prepayment_charge_percent)
