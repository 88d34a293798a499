"""Construction of the store and engine from configuration."""

import logging
from typing import Callable, Optional

from habitstreak.core.config import Settings, settings
from habitstreak.core.database import build_engine as build_db_engine, get_database_url
from habitstreak.features.streaks.store import HabitStore, InMemoryHabitStore
from habitstreak.features.streaks.service import StreakEngine
from habitstreak.models.streak import StreakUpdate

logger = logging.getLogger("habitstreak.store")


def build_store(database_url: Optional[str] = None) -> HabitStore:
    """
    Pick the store implementation.

    - SQL store when a database URL is configured and reachable
    - In-memory store otherwise (data does not survive a restart)
    """
    url = database_url or get_database_url()
    if url:
        from habitstreak.features.streaks.store_sql import SqlHabitStore

        db = None
        try:
            db = build_db_engine(url)
            store = SqlHabitStore(db)
            if store.check():
                return store
            logger.warning("Database unavailable, falling back to in-memory habit store")
        except Exception as e:
            logger.warning(f"Failed to initialize SQL habit store: {e}; falling back to in-memory")
        if db is not None:
            db.dispose()

    return InMemoryHabitStore()


def build_engine(
    cfg: Optional[Settings] = None,
    *,
    store: Optional[HabitStore] = None,
    notifier: Optional[Callable[[StreakUpdate], None]] = None,
) -> StreakEngine:
    config = cfg or settings
    return StreakEngine(
        store or build_store(config.DATABASE_URL),
        notifier=notifier,
        config=config,
    )
