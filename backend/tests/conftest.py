"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: puts ``backend/`` on the import path so the
    ``backoffice`` package resolves without an editable install.
"""

from __future__ import annotations

import sys
from pathlib import Path

_BACKEND_DIR = Path(__file__).resolve().parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))
