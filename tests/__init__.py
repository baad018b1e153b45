"""
Autiv Collector Test Suite

Covers:
- Delegation parsing, scope checks and redemption encoding
- Transport error classification and retry
- Due-subscription scan and idempotent reconciliation
- Charge workflow against a fake chain
- Runner concurrency and loop recovery

Run tests with:
    pytest tests/ -v
"""
