"""
Demonstration: Paid Claim Submission

A calling agent registers a genesis claim against an in-process registry:
the first request gets a 402 challenge, the wallet signs a payment, the
retry is registered, and a second submission is answered as a replay
without paying again.

Run with: python -m examples.demo_submission
"""

import asyncio
import os

import httpx

from claimgate.client import Ed25519Wallet, RetryOrchestrator, RetryPolicy
from claimgate.core.config import ClientsConfig, RegistryConfig
from claimgate.main import create_app
from claimgate.schemas import ClaimSubmission, ClaimType


async def run():
    config = RegistryConfig(
        clients=ClientsConfig(confirmation_poll_interval_seconds=0.01),
    )
    app = create_app(config=config)
    # A key from `tools/manage.py generate-wallet`, or a throwaway one
    wallet = Ed25519Wallet(os.environ.get("CLAIMGATE_WALLET_PRIVATE_KEY") or None)

    print(f"Payer address: {wallet.address[:32]}...")
    print()

    claim = ClaimSubmission(
        subject_id="did:example:demo-agent",
        claim_type=ClaimType.GENESIS,
        payload={
            "name": "Demo Agent",
            "publicKey": wallet.address,
            "capabilities": ["submit", "attest"],
        },
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://registry") as http:
        info = (await http.get("/genesis/info")).json()
        print("=" * 60)
        print("PRICING")
        print("=" * 60)
        print(f"   {info['pricing']['claimSubmission']} on {info['network']}")
        print()

        orchestrator = RetryOrchestrator(http, wallet, policy=RetryPolicy(base_delay=0.05))

        print("=" * 60)
        print("STEP 1: FIRST SUBMISSION (pays)")
        print("=" * 60)
        outcome = await orchestrator.submit(claim)
        print(f"   State:    {outcome.state.value}")
        print(f"   Path:     {' -> '.join(s.value for s in outcome.history)}")
        print(f"   Claim ID: {outcome.record.claim_id}")
        print(f"   Content:  {outcome.record.content_address}")
        print(f"   Tx:       {outcome.record.transaction_hash}")
        if outcome.receipt:
            print(f"   Paid:     {outcome.receipt.payment_id}")
        print()

        print("=" * 60)
        print("STEP 2: SAME CLAIM AGAIN (replay, no payment)")
        print("=" * 60)
        again = await orchestrator.submit(claim)
        print(f"   State:    {again.state.value}")
        print(f"   Replayed: {again.replayed}")
        print(f"   Receipt:  {again.receipt}")
        print()

        print("=" * 60)
        print("STEP 3: DIFFERENT CLAIM, SAME SUBJECT (conflict)")
        print("=" * 60)
        other = claim.model_copy(update={"payload": {"name": "Impostor"}})
        conflict = await orchestrator.submit(other)
        print(f"   State:    {conflict.state.value}")
        print(f"   Error:    {conflict.error.kind}: {conflict.error.detail}")
        print()

    print("[OK] Demo complete")


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
