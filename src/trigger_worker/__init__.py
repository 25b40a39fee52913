"""
Trigger Worker.

Long-running worker that watches oracle prices and drives conditional
orders ("triggers") recorded on an on-chain registry through execution.
The ledger owns trigger state; the worker only proposes transitions.
"""

__version__ = "0.1.0"
