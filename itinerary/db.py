import aiosqlite


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS kv_entries(
                    key TEXT PRIMARY KEY,
                    value_json TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    expires_at REAL,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_kv_entries_expires ON kv_entries(expires_at);
                CREATE TABLE IF NOT EXISTS itineraries(
                    id TEXT PRIMARY KEY,
                    request_id TEXT,
                    user_id TEXT,
                    destination_json TEXT,
                    persona TEXT,
                    status TEXT,
                    metadata_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS activities(
                    id TEXT PRIMARY KEY,
                    itinerary_id TEXT,
                    position INTEGER,
                    name TEXT,
                    description TEXT,
                    category TEXT,
                    timing_json TEXT,
                    location_json TEXT,
                    validation_json TEXT,
                    persona_context_json TEXT
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_itineraries_request ON itineraries(request_id);
                CREATE INDEX IF NOT EXISTS idx_activities_itinerary ON activities(itinerary_id);
                """
            )
            await db.commit()

