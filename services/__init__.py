"""
Service layer for business logic.

This package contains the classification cascade, the confidence
engine, the bulk classifier, the duplicate detector and the
TransactionService facade that wires them together.
"""
