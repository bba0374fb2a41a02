"""
LAMF Ledger

Loan-against-mutual-fund lending core: amortization schedules, FIFO payment
waterfall, overdue/NPA classification, prepayment and foreclosure accounting,
and collateral valuation with LTV margin calls. All financial math uses Decimal.
"""

__version__ = "1.0.0"
