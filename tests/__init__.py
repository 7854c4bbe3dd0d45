"""
DoseLedger Test Suite
=====================

Test Structure:
- test_tools/: pure building blocks (compiler, grace, classifier, gateways)
- test_services/: preference, command, event, analytics and archive services
- test_actions/: notification dispatcher
- test_jobs/: job runner and scheduled jobs
- test_api/: FastAPI routes
- conftest.py: Shared pytest fixtures

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_api/

    # Run only marked tests
    pytest -m "unit"
    pytest -m "api"
"""
