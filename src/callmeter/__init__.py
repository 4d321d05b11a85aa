"""
CALL METER
Real-time prepaid billing for voice/video calls.

A periodic worker claims each connected call once per poll interval, debits
the caller's wallet with a single conditional write, and commits the billed
unit to an append-only ledger. Calls whose next unit cannot be covered are
ended with reason ``insufficient_funds``.
"""

__version__ = "1.0.0"
