"""Test suite for cellanchor.

Test organization:
- fixtures/: Synthetic data generators and test utilities
- unit/: Unit tests for individual modules and the end-to-end workflow

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
