"""
Root pytest configuration for the settlement project.

Django itself is configured by pytest-django (see [tool.pytest.ini_options]
in pyproject.toml). This module only classifies tests; shared fixtures live
in app/conftest.py and app/settlement/tests/conftest.py.
"""

import pytest

E2E_PATTERNS = ["test_integration.py"]

INTEGRATION_PATTERNS = [
    "test_views.py",
    "test_tasks.py",
    "test_notifications.py",
    "test_api_views.py",
    "test_orchestrator.py",
    "test_cancellation.py",
    "test_reconciliation.py",
    "test_payment_status.py",
    "test_order_service.py",
    "test_signals.py",
]

UNIT_PATTERNS = [
    "test_models.py",
    "test_service_result.py",
    "test_pricing.py",
    "test_ledger.py",
    "test_exceptions.py",
    "test_adapters.py",
    "test_state_transitions.py",
    "test_locks.py",
]


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full order journeys)
    - test_views.py, test_orchestrator.py, test_tasks.py, etc. → integration
    - test_models.py, test_pricing.py, test_locks.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    for item in items:
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = item.path.name

        if any(pattern in filename for pattern in E2E_PATTERNS):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in INTEGRATION_PATTERNS):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in UNIT_PATTERNS):
            item.add_marker(pytest.mark.unit)
        else:
            item.add_marker(pytest.mark.integration)
