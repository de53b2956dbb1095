"""
Microlending Loan Ledger

Amortization, payment allocation and loan lifecycle engine for a
microlending back office. All financial math uses Decimal precision and
every balance mutation runs inside an atomic storage unit.
"""

__version__ = "1.0.0"
