"""Research Copilot

CLI for running the API server and the maintenance tasks.
"""

import argparse
import asyncio

from research_copilot.services.store import close_store


async def run_sweep():
    """Expire research runs that never reported a terminal status."""
    from research_copilot.services.reconciler import sweep_stale_runs

    try:
        expired = await sweep_stale_runs()
    finally:
        await close_store()

    if expired:
        print(f"[*] Expired {len(expired)} stale run(s):")
        for run_id in expired:
            print(f"  - {run_id}")
    else:
        print("[*] No stale runs found")


async def watch_run(run_id: str):
    """Follow one run's progress until it reaches a terminal status."""
    from research_copilot.services.progress import ProgressTracker

    print(f"Watching run: {run_id}")
    print("-" * 50)

    tracker = ProgressTracker(run_id)
    try:
        async for event in tracker.events():
            event_type = event.event.value
            data = event.data

            if event_type == "progress":
                print(f"\r[~] {data.get('progress', 0):6.2f}%  {data.get('status')}", end="", flush=True)

            elif event_type == "live_update":
                print(f"\n  [+] {data.get('type')}: {data.get('message')}")

            elif event_type == "research_complete":
                result = data.get("result") or {}
                print(f"\n\n[*] Research Complete!")
                print(f"{'='*50}")
                print(result.get("summary", ""))
                for i, fact in enumerate(result.get("key_facts", []), 1):
                    print(f"  {i}. {fact}")

            elif event_type == "research_failed":
                print(f"\n\n[!] Research {data.get('run_status')}: {data.get('error', 'Unknown error')}")

            elif event_type == "error":
                print(f"\n[!] Error: {data.get('message', 'Unknown error')}")
    except asyncio.CancelledError:
        await tracker.cancel()
        raise
    finally:
        await close_store()


def main():
    parser = argparse.ArgumentParser(description="Research Copilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")

    subparsers.add_parser("sweep", help="Expire stale research runs")

    watch = subparsers.add_parser("watch", help="Follow a research run's progress")
    watch.add_argument("run_id", help="Provider run id")

    args = parser.parse_args()

    if args.command == "serve":
        import uvicorn

        uvicorn.run("research_copilot.main:app", host=args.host, port=args.port, reload=args.reload)
    elif args.command == "sweep":
        asyncio.run(run_sweep())
    elif args.command == "watch":
        asyncio.run(watch_run(args.run_id))


if __name__ == "__main__":
    main()
