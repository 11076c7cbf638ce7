#!/usr/bin/env python3

import argparse
import json
from http import HTTPStatus
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

OUTCOME_EVENTS = ("delivered", "delivery_failed", "rejected")


def _read_events(events_path: Path, limit_lines: int = 2000) -> list[dict[str, Any]]:
    if not events_path.exists():
        return []
    # Simple tail-read: read last N lines.
    with events_path.open("rb") as f:
        data = f.read()
    lines = data.splitlines()[-limit_lines:]
    out: list[dict[str, Any]] = []
    for ln in lines:
        try:
            ev = json.loads(ln.decode("utf-8"))
        except ValueError:
            continue
        if isinstance(ev, dict):
            out.append(ev)
    return out


def _summarize(events: list[dict[str, Any]]) -> dict[str, Any]:
    counts: dict[str, int] = {}
    for e in events:
        name = str(e.get("event") or "unknown")
        counts[name] = counts.get(name, 0) + 1

    return {
        "events": counts,
        "outcomes": {name: counts.get(name, 0) for name in OUTCOME_EVENTS},
        "first_ts": int(events[0].get("ts", 0)) if events else None,
        "last_ts": int(events[-1].get("ts", 0)) if events else None,
    }


def create_app(events_path: Path) -> FastAPI:
    app = FastAPI()

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"ok": True, "status": "up"}

    @app.get("/api/events")
    def api_events(limit: int = Query(200, ge=1, le=2000)) -> JSONResponse:
        events = _read_events(events_path)
        return JSONResponse({"ok": True, "events": events[-limit:]})

    @app.get("/api/summary")
    def api_summary() -> JSONResponse:
        return JSONResponse({"ok": True, **_summarize(_read_events(events_path))})

    @app.exception_handler(Exception)
    def _err(_: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=int(HTTPStatus.INTERNAL_SERVER_ERROR))

    return app


def main() -> int:
    ap = argparse.ArgumentParser(description="Read-only status API over the bridge event log.")
    ap.add_argument("--listen-host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=9000)
    ap.add_argument("--events", default="/var/log/smtp-bridge/events.jsonl")
    args = ap.parse_args()

    app = create_app(Path(args.events))

    import uvicorn  # local import

    uvicorn.run(app, host=args.listen_host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
