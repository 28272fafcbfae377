import json

import httpx
import pytest
import respx
from httpx import Response

from itinerary.config import ContentGenerationConfig, PlacesConfig
from itinerary.errors import HandoffFailure, OutputValidationError, UpstreamFailure
from itinerary.llm import ContentClient
from itinerary.places import PlacesClient, PlacesRateLimited
from itinerary.transport import StageTransport

CONTENT_URL = "https://content.test/v1/chat/completions"
PLACES_URL = "https://places.test/api/place/textsearch/json"


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
async def content_client():
    client = ContentClient(ContentGenerationConfig(base_url="https://content.test/v1/", api_key="sk-test", model="gpt-test"))
    yield client
    await client.close()


@pytest.fixture
async def places_client():
    client = PlacesClient(PlacesConfig(base_url="https://places.test/api/place", api_key="places-key"))
    yield client
    await client.close()


@pytest.mark.asyncio
async def test_generate_json_sends_json_mode_and_parses(content_client):
    captured = {}
    with respx.mock(assert_all_called=True) as respx_mock:
        def handler(request):
            captured["json"] = json.loads(request.content.decode("utf-8"))
            captured["headers"] = request.headers
            return Response(200, json=completion('{"confidence": 0.9}'))

        respx_mock.post(CONTENT_URL).mock(side_effect=handler)
        parsed = await content_client.generate_json("system text", "user text", temperature=0.4, max_tokens=3000)

    assert parsed == {"confidence": 0.9}
    assert captured["headers"]["Authorization"] == "Bearer sk-test"
    assert captured["json"]["model"] == "gpt-test"
    assert captured["json"]["response_format"] == {"type": "json_object"}
    assert captured["json"]["temperature"] == 0.4
    assert captured["json"]["max_tokens"] == 3000
    assert [m["role"] for m in captured["json"]["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_generate_json_rejects_invalid_or_missing_content(content_client):
    with respx.mock() as respx_mock:
        route = respx_mock.post(CONTENT_URL)
        route.mock(return_value=Response(200, json=completion("not json at all")))
        with pytest.raises(OutputValidationError):
            await content_client.generate_json("s", "p")

        route.mock(return_value=Response(200, json=completion("[1, 2]")))
        with pytest.raises(OutputValidationError):
            await content_client.generate_json("s", "p")

        route.mock(return_value=Response(200, json={"choices": []}))
        with pytest.raises(UpstreamFailure) as exc:
            await content_client.generate_json("s", "p")
        assert exc.value.message == "No response from content service"


@pytest.mark.asyncio
async def test_content_http_error_becomes_upstream_failure(content_client):
    with respx.mock() as respx_mock:
        respx_mock.post(CONTENT_URL).mock(
            return_value=Response(500, json={"error": {"message": "The server had an error"}})
        )
        with pytest.raises(UpstreamFailure) as exc:
            await content_client.generate_json("s", "p")
    assert exc.value.message == "The server had an error"
    assert exc.value.details["statusCode"] == 500


@pytest.mark.asyncio
async def test_places_search_returns_first_match(places_client):
    captured = {}
    with respx.mock(assert_all_called=True) as respx_mock:
        def handler(request):
            captured["params"] = dict(request.url.params)
            return Response(200, json={"status": "OK", "results": [{"name": "Louvre Museum"}, {"name": "Other"}]})

        respx_mock.get(PLACES_URL).mock(side_effect=handler)
        place = await places_client.text_search("Louvre Museum 1st arrondissement", 48.8566, 2.3522)

    assert place == {"name": "Louvre Museum"}
    assert captured["params"]["query"] == "Louvre Museum 1st arrondissement"
    assert captured["params"]["location"] == "48.8566,2.3522"
    assert captured["params"]["radius"] == "5000"
    assert captured["params"]["key"] == "places-key"


@pytest.mark.asyncio
async def test_places_status_handling(places_client):
    with respx.mock() as respx_mock:
        route = respx_mock.get(PLACES_URL)
        route.mock(return_value=Response(200, json={"status": "ZERO_RESULTS", "results": []}))
        assert await places_client.text_search("nowhere", 0.0, 0.0) is None

        route.mock(return_value=Response(200, json={"status": "OVER_QUERY_LIMIT"}))
        with pytest.raises(PlacesRateLimited):
            await places_client.text_search("busy", 0.0, 0.0)

        route.mock(return_value=Response(200, json={"status": "REQUEST_DENIED", "error_message": "bad key"}))
        with pytest.raises(UpstreamFailure) as exc:
            await places_client.text_search("denied", 0.0, 0.0)
        assert exc.value.message == "Places API error: REQUEST_DENIED"


@pytest.mark.asyncio
async def test_places_without_key_fails_fast():
    client = PlacesClient(PlacesConfig())
    try:
        assert client.enabled is False
        with pytest.raises(UpstreamFailure):
            await client.text_search("anything", 0.0, 0.0)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transport_sends_auth_and_idempotency_headers():
    transport = StageTransport("http://stages.test/", "secret")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["headers"] = request.headers
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"success": True})

            respx_mock.post("http://stages.test/agents/curation").mock(side_effect=handler)
            resp = await transport.trigger("curation", "r1", "inv-1")
    finally:
        await transport.close()

    assert resp == {"success": True}
    assert captured["json"] == {"requestId": "r1"}
    assert captured["headers"]["X-Internal-Token"] == "secret"
    assert captured["headers"]["Idempotency-Key"] == "inv-1"


@pytest.mark.asyncio
async def test_transport_retries_gateway_errors_only():
    transport = StageTransport("http://stages.test", "secret", retries=1, retry_backoff_s=0)
    try:
        with respx.mock() as respx_mock:
            route = respx_mock.post("http://stages.test/agents/validation")
            route.side_effect = [Response(503), Response(200, json={"ok": True})]
            assert await transport.trigger("validation", "r1") == {"ok": True}
            assert route.call_count == 2

        with respx.mock() as respx_mock:
            route = respx_mock.post("http://stages.test/agents/validation")
            route.mock(return_value=Response(500, json={"error": {"code": "AGENT_FAILURE", "message": "boom"}}))
            with pytest.raises(HandoffFailure) as exc:
                await transport.trigger("validation", "r1")
            assert route.call_count == 1
            assert exc.value.details["statusCode"] == 500
            assert exc.value.details["response"]["message"] == "boom"
    finally:
        await transport.close()


@pytest.mark.asyncio
async def test_transport_gives_up_after_connection_errors():
    transport = StageTransport("http://stages.test", "secret", retries=2, retry_backoff_s=0)
    try:
        with respx.mock() as respx_mock:
            route = respx_mock.post("http://stages.test/agents/research")
            route.mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(HandoffFailure) as exc:
                await transport.trigger("research", "r1")
            assert route.call_count == 3
            assert exc.value.details["attempts"] == 3
    finally:
        await transport.close()
