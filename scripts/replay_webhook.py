"""Deliver the same MercadoPago webhook N times, optionally concurrently.

Used to check that duplicate deliveries credit a payment exactly once: run it,
then compare the client's `total_spent` before and after.
"""

import argparse
import asyncio
import json
from collections import Counter

import httpx

SHAPES = {
    "typed": lambda charge_id: {"type": "payment", "data": {"id": charge_id}},
    "action": lambda charge_id: {"action": "payment.updated", "data": {"id": charge_id}},
    "topic": lambda charge_id: {"id": charge_id, "topic": "payment"},
    "bare": lambda charge_id: charge_id,
}


async def replay(api_url: str, tenant_id: str, charge_id: str, shape: str, times: int, concurrency: int) -> Counter:
    """Post the webhook `times` times with at most `concurrency` in flight."""

    url = f"{api_url.rstrip('/')}/webhooks/mercadopago/{tenant_id}"
    body = json.dumps(SHAPES[shape](charge_id))
    gate = asyncio.Semaphore(concurrency)
    outcomes: Counter = Counter()

    async with httpx.AsyncClient(timeout=10.0) as client:

        async def deliver() -> None:
            async with gate:
                resp = await client.post(url, content=body, headers={"content-type": "application/json"})
                if resp.status_code == 200:
                    outcomes[resp.json().get("outcome", "ok")] += 1
                else:
                    outcomes[f"http_{resp.status_code}"] += 1

        await asyncio.gather(*(deliver() for _ in range(times)))
    return outcomes


def main() -> None:
    """CLI entrypoint for webhook replay."""

    parser = argparse.ArgumentParser(description="Replay one payment webhook several times.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--charge-id", required=True)
    parser.add_argument("--shape", choices=sorted(SHAPES), default="typed")
    parser.add_argument("--times", type=int, default=5)
    parser.add_argument("--concurrency", type=int, default=1)
    args = parser.parse_args()

    outcomes = asyncio.run(
        replay(args.api_url, args.tenant_id, args.charge_id, args.shape, args.times, args.concurrency)
    )
    print(json.dumps(dict(outcomes), indent=2))


if __name__ == "__main__":
    main()
