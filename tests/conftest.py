"""
Pytest configuration and fixtures for signal-trader tests.
"""
import pytest

from infra.metrics import MetricsRecorder


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset the metrics singleton before and after every test so tallies and
    the Prometheus registry never leak between tests.
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)
