from __future__ import annotations
import os

STORE_DIR = os.environ.get("STEPCACHE_DIR", ".stepcache")
PLAN_FILE = os.environ.get("STEPCACHE_PLAN", "stepcache_plan.py")
WORKERS = int(os.environ["STEPCACHE_WORKERS"]) if os.environ.get("STEPCACHE_WORKERS") else None
