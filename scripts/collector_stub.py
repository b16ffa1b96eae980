"""
Collector Stub - Local stand-in for the collection backend.

Accepts the agent's uploads and keeps them in memory so a field test can be
run end to end without the real server:
- GET  /api/health    probe target
- POST /api/location  JSON array of locations
- POST /api/alert     one alert per request
- POST /api/logs      shipped log buffer
- GET  /received      everything accepted so far

Usage:
    python scripts/collector_stub.py --port 3000
    python scripts/collector_stub.py --fail-rate 0.3   # reject 30% of uploads
"""
import argparse
import os
import random
import sys
import time
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI, HTTPException

# Add project root to path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.agent.models import AlertRecord, LocationRecord

app = FastAPI(title="Collector Stub", version="1.0.0")
app.state.fail_rate = 0.0

received: Dict[str, list] = {"locations": [], "alerts": [], "logs": []}


def maybe_fail() -> None:
    """Reject the request with a 500 according to --fail-rate."""
    if random.random() < app.state.fail_rate:
        raise HTTPException(status_code=500, detail="Simulated collector failure")


@app.get("/api/health")
def health():
    return {"status": "ok", "timestamp": int(time.time() * 1000)}


@app.post("/api/location")
def record_locations(locations: List[LocationRecord]):
    if not locations:
        return {"message": "No data"}
    maybe_fail()
    received["locations"].extend(locations)
    degraded = sum(1 for loc in locations if loc.is_degraded)
    print(f"  LOCATIONS: {len(locations)} from session {locations[0].session_id}"
          f" ({degraded} degraded)")
    return {"message": f"Recorded {len(locations)} locations"}


@app.post("/api/alert")
def record_alert(alert: AlertRecord):
    maybe_fail()
    received["alerts"].append(alert)
    print(f"  ALERT: {alert.type.value} - {alert.message}")
    return {"message": "Alert recorded"}


@app.post("/api/logs")
def record_logs(payload: Dict[str, Any]):
    maybe_fail()
    entries = payload.get("logs", [])
    received["logs"].extend(entries)
    print(f"  LOGS: {len(entries)} events from {payload.get('deviceId', '?')}")
    return {"message": f"Recorded {len(entries)} log events"}


@app.get("/received")
def get_received():
    return {
        "locations": [loc.model_dump(by_alias=True) for loc in received["locations"]],
        "alerts": [a.model_dump(by_alias=True, exclude_none=True) for a in received["alerts"]],
        "logs": received["logs"],
    }


def main():
    parser = argparse.ArgumentParser(description="Run a local collector for the tracking agent")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=3000, help="Port (default: 3000)")
    parser.add_argument("--fail-rate", type=float, default=0.0,
                        help="Fraction of uploads rejected with HTTP 500 (default: 0)")
    args = parser.parse_args()

    app.state.fail_rate = args.fail_rate
    print("=" * 60)
    print(f"COLLECTOR STUB on http://{args.host}:{args.port} (fail rate {args.fail_rate:.0%})")
    print("=" * 60)
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
