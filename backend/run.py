#!/usr/bin/env python3
# backend/run.py
"""
Development API server.

Defaults SITE_MODE to ``local`` so tables are created on startup and the
in-memory payment gateway is used when no Razorpay keys are configured.
"""
import os
from pathlib import Path
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("SITE_MODE", "local")

import uvicorn

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    print(f"Starting consultbook API (SITE_MODE={os.environ['SITE_MODE']}) on http://localhost:{port}")
    print(f"API docs: http://localhost:{port}/docs")

    uvicorn.run("consultbook.main:app", host="0.0.0.0", port=port, reload=True, log_level="info")
