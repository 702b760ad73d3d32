from __future__ import annotations
import os

WORKERS = int(os.environ["PIPEWRIGHT_WORKERS"]) if os.environ.get("PIPEWRIGHT_WORKERS") else None
STATE_DIR = os.environ.get("PIPEWRIGHT_STATE_DIR", ".pipewright")
CANCEL_GRACE = float(os.environ.get("PIPEWRIGHT_CANCEL_GRACE", "10"))
SECRET_PREFIX = os.environ.get("PIPEWRIGHT_SECRET_PREFIX", "PIPEWRIGHT_SECRET_")
