import pytest

from itinerary.errors import UpstreamFailure
from itinerary.schemas import AgentProcessingLog, ItineraryRequest


async def seed_curation_running(services, request_id: str = "r1") -> ItineraryRequest:
    await services.requests.create("u1", {"destination": "Paris"}, request_id=request_id)

    def mutate(request: ItineraryRequest) -> None:
        now = services.requests.now()
        research = AgentProcessingLog.start("research", now)
        research.mark_completed(now, {"destinationAnalyzed": "Paris"})
        request.processing_log.append(research)
        request.processing_log.append(AgentProcessingLog.start("curation", now))
        request.status = "curation-in-progress"

    return await services.requests.update(request_id, mutate)


@pytest.mark.asyncio
async def test_fail_marks_only_the_agents_running_entry(services, failures, clock):
    before = await seed_curation_running(services)
    clock.advance(2)
    result = await failures.fail("r1", "curation", UpstreamFailure("OpenAI API Error", {"statusCode": 500}))

    assert result.status == "failed"
    research, curation = result.processing_log
    assert research == before.processing_log[0]
    assert curation.status == "failed"
    assert curation.end_time is not None
    assert curation.error.message == "OpenAI API Error"
    assert curation.error.code == "UPSTREAM_FAILURE"
    assert curation.error.details["agent"] == "curation"
    assert result.error_details == curation.error
    assert result.running_entries() == []


@pytest.mark.asyncio
async def test_plain_exceptions_get_the_generic_code(services, failures):
    await seed_curation_running(services)
    result = await failures.fail("r1", "curation", RuntimeError("boom"))
    assert result.error_details.code == "AGENT_FAILURE"
    assert result.error_details.message == "boom"
    assert result.error_details.details["type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_missing_request_is_a_logged_no_op(failures):
    assert await failures.fail("missing", "research", RuntimeError("boom")) is None


@pytest.mark.asyncio
async def test_terminal_request_is_left_untouched(services, failures):
    await seed_curation_running(services)
    first = await failures.fail("r1", "curation", RuntimeError("first"))
    second = await failures.fail("r1", "validation", RuntimeError("second"))
    assert second.version == first.version
    assert second.error_details.message == "first"
