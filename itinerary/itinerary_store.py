import json
from typing import Any, List, Optional

import aiosqlite

from .errors import ConcurrentModification
from .schemas import Itinerary


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


class ItineraryStore:
    """Permanent itinerary records written by the response stage."""

    def __init__(self, path: str):
        self.path = path

    async def put(self, itinerary: Itinerary) -> Itinerary:
        """Store the itinerary unless its request already has one; return whichever is stored."""
        record = itinerary.to_wire()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO itineraries(id, request_id, user_id, destination_json, persona, status, metadata_json, "
                "created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    itinerary.id,
                    itinerary.request_id,
                    itinerary.user_id,
                    _json_dumps(record["destination"]),
                    itinerary.persona or "",
                    itinerary.status,
                    _json_dumps(record["metadata"]),
                    record["createdAt"],
                    record["updatedAt"],
                ),
            )
            inserted = cursor.rowcount == 1
            await cursor.close()
            if not inserted:
                await db.rollback()
                stored = await self.find_by_request(itinerary.request_id)
                if stored is None:
                    raise ConcurrentModification("Itinerary id already in use", {"itineraryId": itinerary.id})
                return stored
            await db.executemany(
                "INSERT INTO activities(id, itinerary_id, position, name, description, category, timing_json, "
                "location_json, validation_json, persona_context_json) VALUES (?,?,?,?,?,?,?,?,?,?)",
                [
                    (
                        activity["id"],
                        itinerary.id,
                        position,
                        activity["name"],
                        activity["description"],
                        activity["category"],
                        _json_dumps(activity["timing"]),
                        _json_dumps(activity["location"]),
                        _json_dumps(activity["validation"]),
                        _json_dumps(activity["personaContext"]),
                    )
                    for position, activity in enumerate(record["activities"])
                ],
            )
            await db.commit()
        return itinerary

    async def get(self, itinerary_id: str) -> Optional[Itinerary]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM itineraries WHERE id=?", (itinerary_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                return None
            cursor = await db.execute(
                "SELECT * FROM activities WHERE itinerary_id=? ORDER BY position ASC",
                (itinerary_id,),
            )
            activity_rows = await cursor.fetchall()
            await cursor.close()
        activities: List[dict] = [
            {
                "id": item["id"],
                "itineraryId": item["itinerary_id"],
                "name": item["name"],
                "description": item["description"],
                "category": item["category"],
                "timing": _json_loads(item["timing_json"], {}),
                "location": _json_loads(item["location_json"], {}),
                "validation": _json_loads(item["validation_json"], {}),
                "personaContext": _json_loads(item["persona_context_json"], {}),
            }
            for item in activity_rows
        ]
        return Itinerary.model_validate(
            {
                "id": row["id"],
                "requestId": row["request_id"],
                "userId": row["user_id"],
                "destination": _json_loads(row["destination_json"], {}),
                "persona": row["persona"] or None,
                "status": row["status"],
                "activities": activities,
                "metadata": _json_loads(row["metadata_json"], {}),
                "createdAt": row["created_at"],
                "updatedAt": row["updated_at"],
            }
        )

    async def find_by_request(self, request_id: str) -> Optional[Itinerary]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT id FROM itineraries WHERE request_id=? ORDER BY created_at DESC LIMIT 1",
                (request_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        return await self.get(row["id"])
