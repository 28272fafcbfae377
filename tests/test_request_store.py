import pytest

from itinerary.errors import ConcurrentModification, InvalidTransition, NotFoundError
from itinerary.request_store import RequestStore, request_key
from itinerary.schemas import ItineraryRequest


@pytest.mark.asyncio
async def test_create_and_get_round_trip(services):
    created = await services.requests.create("u1", {"destination": "Paris"}, request_id="r1")
    assert created.version == 1
    loaded = await services.requests.get("r1")
    assert loaded.status == "initiated"
    assert loaded.requirements == {"destination": "Paris"}
    assert loaded.version == 1
    raw = await services.kv.get(request_key("r1"))
    assert "version" not in raw
    assert raw["userId"] == "u1"


@pytest.mark.asyncio
async def test_create_with_existing_id_is_rejected(services):
    await services.requests.create("u1", {}, request_id="r1")
    with pytest.raises(ConcurrentModification):
        await services.requests.create("u2", {}, request_id="r1")


@pytest.mark.asyncio
async def test_stale_save_raises(services):
    await services.requests.create("u1", {}, request_id="r1")
    first = await services.requests.get("r1")
    second = await services.requests.get("r1")
    first.status = "research-in-progress"
    await services.requests.save(first)
    second.status = "failed"
    with pytest.raises(ConcurrentModification):
        await services.requests.save(second)
    assert (await services.requests.get("r1")).status == "research-in-progress"


@pytest.mark.asyncio
async def test_update_reapplies_mutation_after_conflict(services):
    await services.requests.create("u1", {}, request_id="r1")
    attempts = []

    def mutate(request: ItineraryRequest) -> None:
        attempts.append(request.version)
        request.requirements["seen"] = len(attempts)

    store: RequestStore = services.requests
    original_require = store.require

    async def racing_require(request_id: str) -> ItineraryRequest:
        loaded = await original_require(request_id)
        if not attempts:
            # Another writer lands between our read and our write.
            other = await original_require(request_id)
            other.requirements["other"] = True
            await store.save(other)
        return loaded

    store.require = racing_require
    updated = await store.update("r1", mutate)
    assert attempts == [1, 2]
    assert updated.requirements == {"other": True, "seen": 2}
    assert updated.version == 3


@pytest.mark.asyncio
async def test_update_aborts_without_writing_when_mutate_raises(services):
    await services.requests.create("u1", {}, request_id="r1")

    def mutate(request: ItineraryRequest) -> None:
        request.status = "failed"
        raise InvalidTransition("nope")

    with pytest.raises(InvalidTransition):
        await services.requests.update("r1", mutate)
    loaded = await services.requests.get("r1")
    assert loaded.status == "initiated"
    assert loaded.version == 1


@pytest.mark.asyncio
async def test_require_missing_raises_not_found(services):
    with pytest.raises(NotFoundError):
        await services.requests.require("missing")
