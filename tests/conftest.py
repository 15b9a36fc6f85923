# tests/conftest.py
"""Shared test fixtures and helpers.

Fixtures:
- harness_settings: HarnessSettings rooted in tmp_path with fast readiness
  budgets, so nothing touches the real ./spire or $TMPDIR
- layout: the RunLayout derived from harness_settings
- sleeper_argv: argv for a long-running child process (supervisor tests)

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import logging
import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from spire_harness.contracts.types import RunLayout
from spire_harness.core.config import (
    HarnessSettings,
    PathSettings,
    ReadinessSettings,
    RegistrationSettings,
    SuiteSettings,
)


@pytest.fixture
def harness_settings(tmp_path: Path) -> HarnessSettings:
    """Settings whose every path lives under tmp_path."""
    return HarnessSettings(
        paths=PathSettings(spire_dir=tmp_path / "spire", tmp_dir=tmp_path / "tmp"),
        readiness=ReadinessSettings(timeout_seconds=5.0, poll_interval_seconds=1.0),
        registration=RegistrationSettings(selectors=["unix:uid:1000"]),
        tests=SuiteSettings(command=["true"]),
    )


@pytest.fixture
def layout(harness_settings: HarnessSettings) -> RunLayout:
    return harness_settings.layout()


@pytest.fixture
def sleeper_argv() -> list[str]:
    """A child that stays alive until signalled."""
    return [sys.executable, "-c", "import time; time.sleep(60)"]


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    """Undo configure_logging() calls made by CLI and logging tests."""
    yield
    structlog.reset_defaults()
    logging.getLogger().handlers = []


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
