"""
Core domain models, Decimal money primitives, contracts, and error taxonomy.

This module contains the foundational building blocks of the ledger that are
independent of external systems (trade sources, price oracles, databases).
"""
