import asyncio
import copy

import pytest

from itinerary.schemas import AgentProcessingLog, CurationResult, ItineraryRequest
from itinerary.validation import ValidationAgent
from tests.fakes import FakePlacesClient, curation_payload

real_sleep = asyncio.sleep


class SerialCheckingPlaces(FakePlacesClient):
    """Records how many lookups are in flight at once."""

    def __init__(self) -> None:
        super().__init__()
        self.in_flight = 0
        self.max_in_flight = 0

    async def text_search(self, query, lat, lng):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await real_sleep(0)
            return await super().text_search(query, lat, lng)
        finally:
            self.in_flight -= 1


async def seed_validation_running(services) -> str:
    await services.requests.create("u1", {"destination": "Paris"}, request_id="r1")
    payload = curation_payload()
    extra = copy.deepcopy(payload["activities"][0])
    extra["name"] = "Musee d'Orsay"
    extra["location"]["name"] = "Musee d'Orsay"
    payload["activities"].append(extra)
    await services.results.put("curation", "r1", CurationResult.model_validate(payload))

    def mutate(request: ItineraryRequest) -> None:
        request.status = "validation-in-progress"
        request.processing_log.append(AgentProcessingLog.start("validation", services.requests.now()))

    request = await services.requests.update("r1", mutate)
    return request.running_entry("validation").invocation_id


@pytest.mark.asyncio
async def test_lookups_run_one_at_a_time_with_delay_between(services, monkeypatch):
    key = await seed_validation_running(services)
    sleeps = []

    async def recording_sleep(delay, *args, **kwargs):
        sleeps.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)
    places = SerialCheckingPlaces()
    data = await ValidationAgent(services, places, delay_ms=250).run("r1", idempotency_key=key)

    assert sleeps == [0.25, 0.25]
    assert places.max_in_flight == 1
    assert [call["query"] for call in places.calls] == [
        "Louvre Museum 1st arrondissement",
        "Le Comptoir du Relais Saint-Germain",
        "Musee d'Orsay 1st arrondissement",
    ]
    assert data["activitiesValidated"] == 3
    assert data["verifiedCount"] == 2

    result = await services.results.get("validation", "r1")
    assert result.api_usage.places_api_calls == 3
    assert result.validated_activities[2].validation.issues == ["No matching place found"]
