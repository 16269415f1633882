"""Poll a payment's status until it is confirmed, times out, or is interrupted."""

import argparse
import asyncio
import json

from qikaopay.client.poller import HttpStatusSource, StatusPoller
from qikaopay.common.config import settings


async def wait(service_url: str, correlation_id: str, interval: float, max_attempts: int) -> int:
    """Run one poller and print its result; exit code 0 only on SUCCESS."""

    source = HttpStatusSource(service_url)
    poller = StatusPoller(source, correlation_id, interval=interval, max_attempts=max_attempts)
    try:
        result = await poller.run()
    finally:
        await source.aclose()
    print(json.dumps({"state": result.state, "status": result.status, "detail": result.detail}))
    print(result.message)
    return 0 if result.succeeded else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Wait for an STK push to be confirmed.")
    parser.add_argument("--service-url", default="http://localhost:8000")
    parser.add_argument("--correlation-id", required=True)
    parser.add_argument("--interval", type=float, default=settings.poll_interval_seconds)
    parser.add_argument("--max-attempts", type=int, default=settings.poll_max_attempts)
    args = parser.parse_args()

    raise SystemExit(asyncio.run(wait(args.service_url, args.correlation_id, args.interval, args.max_attempts)))


if __name__ == "__main__":
    main()
