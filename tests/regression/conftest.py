"""Shared fixtures for regression tests."""

from __future__ import annotations

import random
import sys
from pathlib import Path

import pytest

# Add tests directory to path so we can import from parent conftest
tests_dir = Path(__file__).parent.parent
sys.path.insert(0, str(tests_dir))

from conftest import make_experiment  # noqa: E402
from config.settings import Settings  # noqa: E402
from decision_engine.experiments import ExperimentEngine  # noqa: E402


@pytest.fixture
def running_engine(settings: Settings) -> ExperimentEngine:
    """Engine with the default 50/50 experiment 'exp1' running."""
    engine = ExperimentEngine(settings=settings, rng=random.Random(0))
    engine.create_experiment(make_experiment())
    engine.start_experiment("exp1")
    return engine
