"""Pytest configuration and fixtures."""

import os

import pytest

from window_planner.context.token_estimator import HeuristicTokenEstimator, reset_token_estimator
from window_planner.core.config import get_settings


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["WINDOW_PLANNER_ENV"] = "test"
    os.environ["TOKEN_ESTIMATOR"] = "heuristic"
    os.environ["ENABLE_PROMPT_CACHING"] = "true"
    get_settings.cache_clear()
    reset_token_estimator()
    yield
    get_settings.cache_clear()
    reset_token_estimator()


@pytest.fixture
def estimator():
    return HeuristicTokenEstimator()
