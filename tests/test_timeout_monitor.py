import pytest

from itinerary.schemas import AgentProcessingLog, ItineraryRequest
from itinerary.timeout_monitor import TimeoutMonitor
from itinerary.timeout_store import timeout_key


async def seed_running(services, agent: str, request_id: str = "r1") -> None:
    await services.requests.create("u1", {}, request_id=request_id)

    def mutate(request: ItineraryRequest) -> None:
        request.status = f"{agent}-in-progress"
        request.processing_log.append(AgentProcessingLog.start(agent, services.requests.now()))

    await services.requests.update(request_id, mutate)
    await services.timeouts.start(request_id)


@pytest.mark.asyncio
async def test_absent_record_is_a_no_op(services):
    monitor = TimeoutMonitor(services)
    assert await monitor.check("r1") is False


@pytest.mark.asyncio
async def test_within_budget_changes_nothing(services, clock):
    await seed_running(services, "research")
    before = await services.requests.get("r1")
    clock.advance(20)  # exactly the budget
    assert await TimeoutMonitor(services).check("r1") is False
    after = await services.requests.get("r1")
    assert after.version == before.version
    assert await services.timeouts.get("r1") is not None


@pytest.mark.asyncio
async def test_overrun_fails_the_running_stage_once_and_deletes_record(services, clock):
    await seed_running(services, "validation")
    calls = []
    original_fail = services.failures.fail

    async def counting_fail(request_id, agent, error):
        calls.append((request_id, agent, error.code))
        return await original_fail(request_id, agent, error)

    services.failures.fail = counting_fail
    monitor = TimeoutMonitor(services)
    clock.advance(21)
    assert await monitor.check("r1") is True
    assert calls == [("r1", "validation", "PROCESSING_TIMEOUT")]

    request = await services.requests.get("r1")
    assert request.status == "failed"
    assert request.processing_log[0].status == "failed"
    assert request.error_details.code == "PROCESSING_TIMEOUT"
    assert request.error_details.details["elapsedMs"] == 21000
    assert await services.kv.get(timeout_key("r1")) is None

    assert await monitor.check("r1") is False
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_overrun_without_request_is_attributed_to_research(services, clock):
    await services.timeouts.start("ghost")
    clock.advance(25)
    assert await TimeoutMonitor(services).check("ghost") is True
    assert await services.timeouts.get("ghost") is None


@pytest.mark.asyncio
async def test_sweep_only_fails_overdue_requests(services, clock):
    await seed_running(services, "research", request_id="old")
    clock.advance(15)
    await seed_running(services, "research", request_id="new")
    await services.kv.set("research_results:stale", {}, ttl_s=1)
    clock.advance(10)

    assert await TimeoutMonitor(services).sweep() == 1
    assert (await services.requests.get("old")).status == "failed"
    assert (await services.requests.get("new")).status == "research-in-progress"
    assert await services.timeouts.pending_request_ids() == ["new"]
