"""
Tests Package - Unit and Integration Tests

Test structure:
- tests/unit/ - Fast, isolated tests of helpers, transforms and HTTP clients (respx)
- tests/integration/ - Extract, load, runner and API flows against fakes and a tmp_path blob store
- tests/conftest.py - Shared fixtures and test doubles
"""
