"""
Root conftest.py — puts the repo root on sys.path so that `conveyor.*`,
`orchestrator.*` and `bridge.*` resolve without an install.
Keeps stray test runs away from the real database and log.
"""
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).parent

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

os.environ.setdefault("CONVEYOR_DB_PATH", str(REPO_ROOT / ".pytest_data" / "conveyor.sqlite"))
os.environ.setdefault("AS_BUILT_LOG", str(REPO_ROOT / ".pytest_data" / "as-built.md"))
