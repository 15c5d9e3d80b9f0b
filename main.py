"""Entry point: serve the fleetroll operator API.

    uvicorn main:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import os

import uvicorn

from fleetroll.api import create_app

app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=os.getenv("FLEETROLL_API_HOST", "0.0.0.0"),
        port=int(os.getenv("FLEETROLL_API_PORT", "8000")),
    )
