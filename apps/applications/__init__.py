"""
Welfare scheme applications.

Applications move through a unit > area > district > state review chain.
Every transition is appended to an immutable approval ledger.
"""
