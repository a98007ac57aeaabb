"""Repository-wide pytest configuration.

Pins the repository root on ``sys.path`` so ``mech_client`` imports without an
editable install, and strips the ``MECHX_*`` overrides and key variables from
the environment so a developer's shell cannot leak into the config tests.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent

# Make repository modules importable regardless of the invocation directory.
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _reset_mech_config():
    """Clear configuration env vars and the cached ``mechs.json`` between tests."""

    for key in list(os.environ):
        if key.startswith("MECHX_"):
            os.environ.pop(key, None)
    for key in ("RPC_URL", "MECH_PRIVATE_KEY", "OPERATE_HOME"):
        os.environ.pop(key, None)

    from mech_client.config import clear_config_cache

    clear_config_cache()
    yield
    clear_config_cache()
