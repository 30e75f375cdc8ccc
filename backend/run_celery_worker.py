#!/usr/bin/env python3
# backend/run_celery_worker.py
"""
Development Celery worker consuming every consultbook queue.

Set CELERY_QUEUES to a comma separated subset to run a narrower worker.
"""
import os
from pathlib import Path
import subprocess
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("SITE_MODE", "local")

DEFAULT_QUEUES = "notifications,bookings,payments,celery"

if __name__ == "__main__":
    queues = os.getenv("CELERY_QUEUES") or DEFAULT_QUEUES
    print(f"Starting Celery worker (SITE_MODE={os.environ['SITE_MODE']}), queues: {queues}")

    cmd = [
        sys.executable,
        "-m",
        "celery",
        "-A",
        "consultbook.tasks.celery_app",
        "worker",
        "--loglevel=info",
        "--concurrency=2",
        "--max-tasks-per-child=100",
        "--pool=prefork",
        "-Q",
        queues,
    ]

    subprocess.run(cmd, check=False)
