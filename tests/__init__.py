"""Test suite for sctrace.

Test organization:
- fixtures/: Synthetic data generators and test utilities
- unit/: Unit tests for individual modules and the pipeline

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
