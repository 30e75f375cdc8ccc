#!/usr/bin/env python3
# backend/run_celery_beat.py
"""Development Celery beat: outbox dispatch, reservation sweep, reconciliation, lifecycle."""
import os
from pathlib import Path
import subprocess
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("SITE_MODE", "local")

if __name__ == "__main__":
    print(f"Starting Celery beat (SITE_MODE={os.environ['SITE_MODE']})")

    cmd = [sys.executable, "-m", "celery", "-A", "consultbook.tasks.celery_app", "beat", "--loglevel=info"]

    subprocess.run(cmd, check=False)
