"""Test suite for CellType-Reference.

Test organization:
- fixtures/: Synthetic reference and test data generators
- unit/: Unit tests for individual modules

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
