"""
rrdmetrics CLI — inspect a store, run the demo gateway, or drive traffic at it.

Usage:
    python -m scripts.rrdmetrics_cli inspect ./data/metrics.rrd
    python -m scripts.rrdmetrics_cli serve
    python -m scripts.rrdmetrics_cli traffic --num-requests 500

`traffic` mixes fast, slow, 4xx and 5xx requests so every series of every
route set moves. Watch /stats for the pending values between flushes.
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from configs.settings import get_settings
from utils.logger import setup_logging, get_logger

_log = get_logger(__name__)

_PATHS = [
    "/",
    "/ping",
    "/slow/25",
    "/slow/120",
    "/slow/-1",   # 400
    "/fail",      # 503
    "/nope",      # 404, lands in `unknown`
]


def inspect_store(path: str, backend: str) -> int:
    """Print the data-source names persisted at `path`."""
    from services.metrics_service.errors import StoreError
    from services.metrics_service.store import create_store

    store = create_store(backend)
    if not store.exists(path):
        print(f"{path}: no store")
        return 1
    try:
        names = sorted(store.read_schema(path))
    except StoreError as e:
        print(f"{path}: unreadable ({e.message})")
        return 2

    print(f"{path}: {len(names)} data sources")
    for name in names:
        print(f"  {name}")
    return 0


def drive_traffic(base_url: str, num_requests: int) -> int:
    """Send a mixed request pattern and summarise status classes."""
    import httpx

    counts = {"2xx": 0, "4xx": 0, "5xx": 0, "other": 0}
    total_ms = 0.0
    max_ms = 0.0

    with httpx.Client(base_url=base_url, timeout=30.0) as client:
        for i in range(num_requests):
            path = _PATHS[i % len(_PATHS)]
            start = time.perf_counter_ns()
            try:
                resp = client.get(path)
            except httpx.HTTPError as e:
                print(f"  FAIL {path}: {e}")
                counts["other"] += 1
                continue
            elapsed_ms = (time.perf_counter_ns() - start) / 1_000_000
            total_ms += elapsed_ms
            max_ms = max(max_ms, elapsed_ms)
            key = f"{resp.status_code // 100}xx"
            counts[key if key in counts else "other"] += 1

    sent = num_requests - counts["other"]
    print(f"\n{'='*50}")
    print(f" Traffic summary ({num_requests} requests)")
    print(f"{'='*50}")
    for key, value in counts.items():
        print(f"  {key:<6} {value}")
    if sent:
        print(f"  Avg:   {total_ms / sent:.2f} ms")
        print(f"  Max:   {max_ms:.2f} ms")
    print(f"{'='*50}")
    return 0


def main() -> None:
    cfg = get_settings()
    parser = argparse.ArgumentParser(description="rrdmetrics utilities")
    sub = parser.add_subparsers(dest="command", required=True)

    p_inspect = sub.add_parser("inspect", help="List data sources in a store")
    p_inspect.add_argument("path", nargs="?", default=cfg.metrics_store_path)
    p_inspect.add_argument("--backend", default=cfg.metrics_store_backend, choices=["rrdtool", "memory"])

    sub.add_parser("serve", help="Run the demo gateway with uvicorn")

    p_traffic = sub.add_parser("traffic", help="Send mixed requests to a running gateway")
    p_traffic.add_argument("--url", type=str, default=f"http://localhost:{cfg.api_port}")
    p_traffic.add_argument("--num-requests", "-n", type=int, default=100)

    args = parser.parse_args()
    setup_logging()

    if args.command == "inspect":
        sys.exit(inspect_store(args.path, args.backend))
    if args.command == "serve":
        from services.api_gateway.app import start_server
        _log.info("serve_start", host=cfg.api_host, port=cfg.api_port)
        start_server()
        return
    if args.command == "traffic":
        sys.exit(drive_traffic(args.url, args.num_requests))


if __name__ == "__main__":
    main()
