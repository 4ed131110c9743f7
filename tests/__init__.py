"""
Tests Package - Unit and Integration Tests

Test structure:
- tests/unit/ - Fast, isolated tests per component (httpx.MockTransport, botocore Stubber)
- tests/integration/ - Multi-invocation export chains against in-process fakes
- tests/conftest.py - Environment defaults and shared fixtures
"""
