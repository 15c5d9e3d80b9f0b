"""Demo replica for exercising fleetroll end to end.

Serves /health on the port the prober targets and lets you inject faults:
    uvicorn services.web.app:app --port 8080
"""
from __future__ import annotations

import os
import time

from fastapi import FastAPI, HTTPException

VERSION = os.getenv("VERSION", "dev")
ZONE = os.getenv("ZONE", "local")

app = FastAPI(title=f"fleetroll demo replica {VERSION}")

APP_STATE = {"cpu_load": 0, "unhealthy": False}


@app.get("/")
def read_root() -> dict[str, str]:
    if APP_STATE["cpu_load"] > 0:
        time.sleep(APP_STATE["cpu_load"] / 200.0)
    return {"version": VERSION, "zone": ZONE, "load": f"{APP_STATE['cpu_load']}%"}


@app.get("/health")
def health() -> dict[str, str]:
    if APP_STATE["unhealthy"]:
        raise HTTPException(status_code=503, detail="unhealthy")
    return {"status": "healthy", "version": VERSION}


@app.post("/simulate/cpu/{level}")
def set_cpu(level: int) -> dict[str, int]:
    APP_STATE["cpu_load"] = max(0, min(100, level))
    return {"cpu_load": APP_STATE["cpu_load"]}


@app.post("/simulate/unhealthy")
def set_unhealthy() -> dict[str, bool]:
    APP_STATE["unhealthy"] = True
    return {"unhealthy": True}


@app.post("/simulate/reset")
def reset() -> dict[str, str]:
    APP_STATE["cpu_load"] = 0
    APP_STATE["unhealthy"] = False
    return {"msg": "reset"}
