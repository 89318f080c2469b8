"""
Firestore client for Signal Trader.

Persists the trading state (open positions, history and summary) as a single
document that is replaced on every save and read once at engine start.

Persistence is advisory. The first failure marks the client inactive for the
rest of the process lifetime and the engine continues in memory.
"""

from typing import Any

import structlog
from google.cloud import firestore
from google.cloud.firestore_v1 import AsyncClient
from pydantic import ValidationError

from shared.config import Settings, get_settings
from shared.models import HistoryEntry, Position, Summary, TradingSnapshot, utc_now

logger = structlog.get_logger(__name__)


class PersistenceError(Exception):
    """Raised when the trading state cannot be saved or loaded."""

    pass


class FirestoreClient:
    """
    Async Firestore adapter for the trading state document.

    The document lives at ``{state_collection}/{state_document}`` and has the
    shape ``{positions, history, summary, updated_at}``.
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize Firestore client.

        Args:
            settings: Settings instance. If None, loads from environment.
        """
        self.settings = settings or get_settings()
        self._db: AsyncClient | None = None
        self._active = bool(self.settings.persistence_enabled)
        self.disabled_reason: str | None = (
            None if self._active else "persistence not configured"
        )

    @property
    def db(self) -> AsyncClient:
        """Get Firestore client, creating if needed."""
        if self._db is None:
            self._db = firestore.AsyncClient(project=self.settings.gcp_project_id)
        return self._db

    async def close(self) -> None:
        """Close the Firestore client."""
        if self._db:
            self._db.close()
            self._db = None

    def is_active(self) -> bool:
        """Check whether persistence is configured and has not failed."""
        return self._active

    def _disable(self, reason: str) -> None:
        if self._active:
            logger.warning("persistence_disabled", reason=reason)
        self._active = False
        self.disabled_reason = reason

    def _state_ref(self):
        config = self.settings.firestore
        return self.db.collection(config.state_collection).document(config.state_document)

    # =========================================================================
    # Trading State
    # =========================================================================

    async def save_trading_state(self, snapshot: TradingSnapshot) -> bool:
        """
        Replace the persisted trading state document.

        History is trimmed to the newest ``persisted_history_limit`` entries.

        Args:
            snapshot: Ledger snapshot to store

        Returns:
            True if the document was written, False if persistence is inactive

        Raises:
            PersistenceError: If the write fails
        """
        if not self._active:
            return False

        limit = self.settings.trading.persisted_history_limit
        doc: dict[str, Any] = snapshot.model_dump(mode="json")
        doc["history"] = doc["history"][-limit:]
        doc["updated_at"] = utc_now().isoformat()

        try:
            await self._state_ref().set(doc)
        except Exception as e:
            logger.error("save_trading_state_error", error=str(e))
            self._disable(str(e))
            raise PersistenceError(f"Failed to save trading state: {str(e)}") from e

        logger.debug(
            "trading_state_saved",
            positions=len(doc["positions"]),
            history=len(doc["history"]),
        )
        return True

    async def load_trading_state(self) -> TradingSnapshot | None:
        """
        Read the persisted trading state.

        Returns:
            TradingSnapshot, or None if persistence is inactive or nothing
            has been stored yet

        Raises:
            PersistenceError: If the read fails
        """
        if not self._active:
            return None

        try:
            doc = await self._state_ref().get()
        except Exception as e:
            logger.error("load_trading_state_error", error=str(e))
            self._disable(str(e))
            raise PersistenceError(f"Failed to load trading state: {str(e)}") from e

        if not doc.exists:
            return None
        return self._parse_snapshot(doc.to_dict() or {})

    async def get_trading_summary(self) -> Summary | None:
        """
        Read only the persisted summary.

        Returns:
            Summary or None if nothing is stored

        Raises:
            PersistenceError: If the read fails
        """
        snapshot = await self.load_trading_state()
        return snapshot.summary if snapshot else None

    def _parse_snapshot(self, data: dict[str, Any]) -> TradingSnapshot:
        """Build a snapshot from a stored document, skipping malformed records."""
        positions = []
        for item in data.get("positions") or []:
            try:
                positions.append(Position.model_validate(item))
            except ValidationError as e:
                logger.warning("stored_position_invalid", error=str(e))

        history = []
        for item in data.get("history") or []:
            try:
                history.append(HistoryEntry.model_validate(item))
            except ValidationError as e:
                logger.warning("stored_history_entry_invalid", error=str(e))

        try:
            summary = Summary.model_validate(data.get("summary") or {})
        except ValidationError as e:
            logger.warning("stored_summary_invalid", error=str(e))
            summary = Summary(currency=self.settings.trading.accounting_currency)

        return TradingSnapshot(
            positions=positions,
            history=history,
            summary=summary,
            updated_at=data.get("updated_at"),
        )


# Factory function
def get_firestore_client(settings: Settings | None = None) -> FirestoreClient:
    """Create a new Firestore client instance."""
    return FirestoreClient(settings=settings)
