import json

import httpx
import pytest

from portal.core.overseerr_client import (
    OverseerrClient,
    RequestPayload,
    RequestStatus,
)


def _client(handler) -> OverseerrClient:
    return OverseerrClient(
        base_url="http://overseerr.local/",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )


def _router(media: httpx.Response, request: httpx.Response | None = None, log: list | None = None):
    def handler(req: httpx.Request) -> httpx.Response:
        if log is not None:
            log.append(req)
        if req.method == "GET":
            return media
        assert request is not None, "unexpected request submission"
        return request

    return handler


MOVIE = RequestPayload(media_type="movie", media_id=329865)


@pytest.mark.asyncio
async def test_available_media_is_not_requested() -> None:
    log: list[httpx.Request] = []
    media = httpx.Response(200, json={"mediaInfo": {"status": 5}})

    result = await _client(_router(media, log=log)).submit_request(MOVIE)

    assert result.status is RequestStatus.ALREADY_AVAILABLE
    assert [req.method for req in log] == ["GET"]
    assert log[0].url.path == "/api/v1/movie/329865"
    assert log[0].headers["X-Api-Key"] == "secret"


@pytest.mark.asyncio
async def test_pending_media_reports_existing_request() -> None:
    media = httpx.Response(200, json={"mediaInfo": {"status": 2, "requests": [{"id": 91}]}})

    result = await _client(_router(media)).submit_request(MOVIE)

    assert result.status is RequestStatus.ALREADY_REQUESTED
    assert result.request_id == 91


@pytest.mark.asyncio
async def test_unknown_media_is_requested() -> None:
    log: list[httpx.Request] = []
    handler = _router(httpx.Response(404), httpx.Response(201, json={"id": 12}), log)
    payload = RequestPayload(media_type="tv", media_id=95396, seasons=(1, 2))

    result = await _client(handler).submit_request(payload)

    assert result.status is RequestStatus.CREATED
    assert result.request_id == 12
    submitted = log[-1]
    assert submitted.url.path == "/api/v1/request"
    assert json.loads(submitted.content) == {"mediaType": "tv", "mediaId": 95396, "seasons": [1, 2]}


@pytest.mark.asyncio
async def test_status_check_failure_still_submits() -> None:
    handler = _router(httpx.Response(503), httpx.Response(201, json={"id": 3}))

    result = await _client(handler).submit_request(MOVIE)

    assert result.status is RequestStatus.CREATED


@pytest.mark.asyncio
async def test_conflict_means_already_requested() -> None:
    handler = _router(httpx.Response(404), httpx.Response(409, json={"message": "Request exists"}))

    result = await _client(handler).submit_request(MOVIE)

    assert result.status is RequestStatus.ALREADY_REQUESTED


@pytest.mark.asyncio
async def test_rejected_request_carries_message() -> None:
    handler = _router(
        httpx.Response(404), httpx.Response(403, json={"message": "Quota exceeded"})
    )

    result = await _client(handler).submit_request(MOVIE)

    assert result.status is RequestStatus.FAILED
    assert result.error == "Quota exceeded"


@pytest.mark.asyncio
async def test_rejected_request_without_body_uses_reason() -> None:
    handler = _router(httpx.Response(404), httpx.Response(500, text="oops"))

    result = await _client(handler).submit_request(MOVIE)

    assert result.status is RequestStatus.FAILED
    assert result.error == "Internal Server Error"


@pytest.mark.asyncio
async def test_transport_failure_is_reported_not_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await _client(handler).submit_request(MOVIE)

    assert result.status is RequestStatus.FAILED
    assert result.error == "connection refused"


def test_incomplete_configuration_is_rejected() -> None:
    with pytest.raises(ValueError):
        OverseerrClient(base_url="", api_key="secret")
