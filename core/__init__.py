"""
Core modules for statement transaction classification.

This package contains:
- config: Application configuration and settings
- exceptions: Custom exception classes
- logger: Logging configuration
- schema: Pydantic models for data validation
- categories: Category taxonomy and merchant pattern table
- normalize: Text normalization and token estimation
- matching: Similarity primitives for duplicate detection
"""
