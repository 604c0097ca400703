"""Utility modules for loopguard.

- logging: logger setup for the CLI and standalone use
- structured_logger: JSON-lines event log of Work Item state transitions
"""
