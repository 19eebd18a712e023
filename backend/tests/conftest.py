import sys
from pathlib import Path

import pytest

# Ensure `backend/` is on sys.path so tests can import local modules
# like `fetch.*`, `geo.*`, and `main`.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_ROOT))


@pytest.fixture(autouse=True)
def _no_telemetry_by_default(monkeypatch):
    # Telemetry tests opt back in with their own path.
    monkeypatch.setenv("HOUSING_MAP_TELEMETRY", "0")
