from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "daproof" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep operator env vars out of config-sensitive tests; start with clean metrics."""
    import os

    for k in list(os.environ):
        if k.startswith("DAPROOF_"):
            monkeypatch.delenv(k, raising=False)

    from daproof import metrics

    metrics.reset()
