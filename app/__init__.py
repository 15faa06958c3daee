"""
HTTP API for the statement classification service.
"""
