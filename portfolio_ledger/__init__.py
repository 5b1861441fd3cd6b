"""
Portfolio Ledger - Source Package

The investment ledger and valuation reconciliation core of a
personal-finance tracker.

DESIGN PRINCIPLES:
1. Money is integer minor units, quantities are Decimals
2. Trade history is the source of truth, holdings are projections
3. Snapshots and their ledger plug entries live and die together
4. Automated correlation keys are never rewritten
5. Every batch reports what succeeded and what didn't
"""

__version__ = "1.0.0"
__author__ = "Portfolio Ledger Team"
