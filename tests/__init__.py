"""
Tests Package - Unit and Integration Tests

Test structure:
- tests/conftest.py - Shared fixtures (fake model backend, fake sleep, posts)
- tests/test_*.py - One module per component

External services are never contacted: forum and GitHub HTTP traffic goes
through httpx.MockTransport, model calls through an in-memory backend.
"""
