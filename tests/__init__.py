"""
Test suite for the FIFO closed-lot ledger

Contains:
- tests/unit/          : Unit tests for individual modules and end-to-end ledger runs
"""
