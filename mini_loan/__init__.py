"""
Mini Loan Ledger

Simple-interest loan amortization and a per-borrower payment ledger,
using Decimal money throughout and a hash-chained audit trail.
"""

__version__ = "1.0.0"
