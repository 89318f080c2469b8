"""
Initialize runtime settings and trading state for Signal Trader.

Usage:
    python scripts/init_state.py

This script:
- Creates the runtime settings file with defaults if it is missing
- Reports the persisted trading state, creating an empty document if none exists
"""

import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.config import get_settings
from shared.firestore_client import FirestoreClient, PersistenceError
from shared.ledger import PositionLedger
from shared.settings_store import SettingsStore


async def init_settings_file() -> None:
    """Create or show the runtime settings file."""
    store = SettingsStore()
    print(f"Runtime settings file: {store.path}")
    current = await store.load()
    print(f"  token={current.token or '-'} amount={current.amount}")
    print(f"  market_cap_minimum={current.market_cap_minimum}")
    print(f"  profit_target_percent={current.profit_target_percent}")


async def init_trading_state(client: FirestoreClient) -> bool:
    """Report the stored trading state, creating an empty one if missing."""
    print("\nChecking persisted trading state...")
    try:
        snapshot = await client.load_trading_state()
    except PersistenceError as e:
        print(f"  ERROR: {e}")
        return False

    if snapshot is not None:
        summary = snapshot.summary
        print(f"  Open positions: {len(snapshot.positions)}")
        print(f"  History entries: {len(snapshot.history)}")
        print(f"  Closed trades: {summary.total_closed_trades}")
        print(f"  Profit: {summary.total_profit_usd:.4f} {summary.currency}")
        return True

    settings = get_settings()
    ledger = PositionLedger(currency=settings.trading.accounting_currency)
    ledger.refresh_summary("init")
    try:
        await client.save_trading_state(ledger.snapshot())
    except PersistenceError as e:
        print(f"  ERROR: {e}")
        return False
    print("  Created empty trading state document")
    return True


async def main() -> None:
    """Main initialization function."""
    print("=" * 60)
    print("Signal Trader State Initialization")
    print("=" * 60)
    print()

    await init_settings_file()

    settings = get_settings()
    if not settings.persistence_enabled:
        print("\nPersistence disabled (set GCP_PROJECT_ID to enable); skipping Firestore")
        return

    print(f"\nProject ID: {settings.gcp_project_id}")
    client = FirestoreClient(settings)
    try:
        ok = await init_trading_state(client)
    finally:
        await client.close()

    if not ok:
        sys.exit(1)

    print()
    print("=" * 60)
    print("Initialization complete!")
    print("=" * 60)
    print()
    print("Next steps:")
    print("  1. Start the API: uvicorn services.orchestrator.main:app --reload")
    print("  2. Start the engine: curl -X POST http://localhost:8000/engine/start -H 'Content-Type: application/json' -d '{}'")


if __name__ == "__main__":
    asyncio.run(main())
