"""Tests for the headless-browser sandbox client."""

import base64
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from card_enrichment.core.exceptions import ConfigurationError, SandboxError
from card_enrichment.renderables.sandbox import (
    BrowserSandbox,
    SandboxResult,
    frame_from_result,
)

API = "https://sandbox.test"


def _response(method: str, url: str, status: int = 200, json=None) -> httpx.Response:
    return httpx.Response(status, json=json, request=httpx.Request(method, url))


def _client(execute_response=None, execute_error=None, session_status=200) -> AsyncMock:
    client = AsyncMock()
    client.__aenter__.return_value = client
    client.__aexit__.return_value = None

    session = _response("POST", f"{API}/browsers", session_status, {"session_id": "s-1"})

    async def post(url, **kwargs):
        if url.endswith("/browsers"):
            return session
        if execute_error is not None:
            raise execute_error
        return execute_response

    client.post.side_effect = post
    client.delete.return_value = _response("DELETE", f"{API}/browsers/s-1")
    return client


class TestBrowserSandbox:
    """Session lifecycle and result decoding."""

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            BrowserSandbox(None)

    @pytest.mark.asyncio
    async def test_execute_decodes_json_string(self):
        client = _client(
            _response(
                "POST",
                f"{API}/browsers/s-1/playwright/execute",
                json={"success": True, "result": '{"success": true, "width": 10}'},
            )
        )

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            result = await BrowserSandbox("key", API).execute("return 1;", timeout_sec=60)

        assert result.success is True
        assert result.result == {"success": True, "width": 10}
        execute_call = client.post.call_args_list[1]
        assert execute_call.kwargs["json"] == {"code": "return 1;", "timeout_sec": 60}
        assert execute_call.kwargs["headers"] == {"Authorization": "Bearer key"}
        client.delete.assert_awaited_once_with(
            f"{API}/browsers/s-1", headers={"Authorization": "Bearer key"}
        )

    @pytest.mark.asyncio
    async def test_service_reported_failure(self):
        client = _client(
            _response(
                "POST",
                f"{API}/browsers/s-1/playwright/execute",
                json={"success": False, "error": "script timed out"},
            )
        )

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            result = await BrowserSandbox("key", API).execute("x", timeout_sec=60)

        assert result.success is False
        assert result.error == "script timed out"

    @pytest.mark.asyncio
    async def test_session_deleted_when_execution_fails(self):
        client = _client(execute_error=httpx.ReadTimeout("slow"))

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(SandboxError) as exc_info:
                await BrowserSandbox("key", API).execute("x", timeout_sec=60)

        assert exc_info.value.retryable is True
        client.delete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_session_creation_failure(self):
        client = _client(session_status=503)

        with patch("card_enrichment.core.http_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(SandboxError):
                await BrowserSandbox("key", API).execute("x", timeout_sec=60)

        client.delete.assert_not_called()


class TestFrameFromResult:
    def test_decodes_frame(self):
        payload = {
            "success": True,
            "data": base64.b64encode(b"webp-bytes").decode(),
            "width": 400,
            "height": 225,
            "mimeType": "image/webp",
            "originalWidth": 1920,
            "originalHeight": 1080,
            "duration": 12.5,
        }

        frame = frame_from_result(SandboxResult(success=True, result=payload))

        assert frame.data == b"webp-bytes"
        assert frame.mime_type == "image/webp"
        assert (frame.width, frame.height) == (400, 225)
        assert (frame.original_width, frame.original_height) == (1920, 1080)
        assert frame.duration == 12.5

    def test_execution_failure(self):
        with pytest.raises(SandboxError) as exc_info:
            frame_from_result(SandboxResult(success=False, error="boom"))

        assert "boom" in str(exc_info.value)

    def test_script_failure(self):
        with pytest.raises(SandboxError) as exc_info:
            frame_from_result(
                SandboxResult(success=True, result={"success": False, "error": "video_load_failed"})
            )

        assert "video_load_failed" in str(exc_info.value)

    def test_malformed_payload(self):
        with pytest.raises(SandboxError):
            frame_from_result(SandboxResult(success=True, result={"success": True, "data": "!!"}))

    def test_non_dict_payload(self):
        with pytest.raises(SandboxError):
            frame_from_result(SandboxResult(success=True, result=None))
