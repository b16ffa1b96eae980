"""
Agent Control - Inspect and drive a running agent through its Redis state.

The agent only reads the session; the foreground app normally writes it.
This script stands in for the app during field testing:
1. Start or end a tracking session
2. Show heartbeat, last send and queue depths
3. Dump or clear the offline queues

Usage:
    python scripts/agent_ctl.py start --hours 2
    python scripts/agent_ctl.py status
    python scripts/agent_ctl.py queue locations --limit 5
    python scripts/agent_ctl.py end
"""
import argparse
import json
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

import redis

# Add project root to path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.agent.store import (
    ALERT_QUEUE_KEY,
    CYCLE_COUNT_KEY,
    HEARTBEAT_KEY,
    IS_OFFLINE_KEY,
    LAST_ACCURACY_KEY,
    LAST_SUCCESSFUL_SEND_KEY,
    LOCATION_QUEUE_KEY,
    SESSION_END_KEY,
    SESSION_ID_KEY,
)
from src.agent.time_utils import from_millis, now_millis, to_millis

QUEUES = {"locations": LOCATION_QUEUE_KEY, "alerts": ALERT_QUEUE_KEY}


def format_millis(value) -> str:
    """Convert epoch millis to a readable local time."""
    if not value or value == "0":
        return "never"
    dt = from_millis(int(value)).astimezone()
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def load_queue(r: redis.Redis, key: str) -> list:
    raw = r.get(key)
    return json.loads(raw) if raw else []


def cmd_start(r: redis.Redis, prefix: str, args) -> None:
    session_id = args.session_id or str(uuid.uuid4())
    end_at = to_millis(datetime.now(timezone.utc) + timedelta(hours=args.hours))
    r.set(prefix + SESSION_ID_KEY, session_id)
    r.set(prefix + SESSION_END_KEY, str(end_at))
    print(f"Session {session_id} active until {format_millis(end_at)}")


def cmd_end(r: redis.Redis, prefix: str, args) -> None:
    r.delete(prefix + SESSION_ID_KEY, prefix + SESSION_END_KEY)
    print("Session cleared")


def cmd_status(r: redis.Redis, prefix: str, args) -> None:
    now = now_millis()
    heartbeat = r.get(prefix + HEARTBEAT_KEY)
    session_id = r.get(prefix + SESSION_ID_KEY)
    end_at = r.get(prefix + SESSION_END_KEY)

    print("=" * 60)
    print("AGENT STATUS")
    print("=" * 60)
    if session_id and end_at:
        state = "ACTIVE" if now < int(end_at) else "EXPIRED"
        print(f"  Session:      {session_id} ({state}, ends {format_millis(end_at)})")
    else:
        print("  Session:      none")
    print(f"  Heartbeat:    {format_millis(heartbeat)}", end="")
    if heartbeat:
        print(f" ({(now - int(heartbeat)) // 1000}s ago)")
    else:
        print()
    print(f"  Cycles:       {r.get(prefix + CYCLE_COUNT_KEY) or 0}")
    print(f"  Last send:    {format_millis(r.get(prefix + LAST_SUCCESSFUL_SEND_KEY))}")
    print(f"  Offline:      {r.get(prefix + IS_OFFLINE_KEY) or 'unknown'}")
    print(f"  Accuracy:     {r.get(prefix + LAST_ACCURACY_KEY) or 'unknown'} m")
    for name, key in QUEUES.items():
        print(f"  Queue {name + ':':<9} {len(load_queue(r, prefix + key))}")


def cmd_queue(r: redis.Redis, prefix: str, args) -> None:
    key = prefix + QUEUES[args.name]
    if args.clear:
        r.delete(key)
        print(f"Cleared {args.name} queue")
        return
    entries = load_queue(r, key)
    print(f"{args.name}: {len(entries)} queued (oldest first)")
    for raw in entries[:args.limit]:
        print(f"  {raw}")


def main():
    parser = argparse.ArgumentParser(description="Inspect and drive the tracking agent")
    parser.add_argument("--prefix", default=os.getenv("AGENT_KEY_PREFIX", "agent:"),
                        help="Key prefix of the agent instance (default: agent:)")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start a tracking session")
    start.add_argument("--hours", type=float, default=2.0, help="Session length (default: 2)")
    start.add_argument("--session-id", help="Session id (default: random UUID)")
    start.set_defaults(func=cmd_start)

    end = sub.add_parser("end", help="End the current session")
    end.set_defaults(func=cmd_end)

    status = sub.add_parser("status", help="Show heartbeat, last send and queue depths")
    status.set_defaults(func=cmd_status)

    queue = sub.add_parser("queue", help="Dump or clear an offline queue")
    queue.add_argument("name", choices=sorted(QUEUES))
    queue.add_argument("--limit", type=int, default=10, help="Entries to print (default: 10)")
    queue.add_argument("--clear", action="store_true", help="Delete the queue")
    queue.set_defaults(func=cmd_queue)

    args = parser.parse_args()

    redis_host = os.getenv("REDIS_HOST", "127.0.0.1")
    redis_port = int(os.getenv("REDIS_PORT", "6379"))
    redis_db = int(os.getenv("REDIS_DB", "0"))
    try:
        r = redis.Redis(host=redis_host, port=redis_port, db=redis_db, decode_responses=True)
        r.ping()
    except redis.ConnectionError:
        print(f"ERROR: Could not connect to Redis at {redis_host}:{redis_port}")
        sys.exit(1)

    args.func(r, args.prefix, args)


if __name__ == "__main__":
    main()
