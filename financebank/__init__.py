"""
FinanceBank Ledger - Source Package

The account and transaction ledger behind the FinanceBank personal
finance dashboard.

DESIGN PRINCIPLES:
1. Every balance change is exactly one recorded transaction
2. Validate everything before writing anything
3. No silent corrections (amounts are never rounded on the way in)
4. Every operation must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "FinanceBank Team"
