"""
Remote classifier integration.

This package contains:
- client: HTTP client for the OpenAI-compatible chat-completions endpoint
- prompts: Single-transaction and bulk prompt builders
- classify: Remote calls wrapped into typed outcomes
- validation: Bulk answer validation and per-transaction repair
"""
