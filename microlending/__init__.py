"""
Micro-lending Core

Loan lifecycle state machine with mobile-money fee collection, admin
decisions, refunds and disbursements reconciled against asynchronous
payment provider callbacks.
"""

__version__ = "1.0.0"
