"""Headless-browser sandbox client.

Runs Playwright snippets in a remote browser session (Kernel REST API).
The client owns the session lifecycle: a fresh session per execution,
always deleted afterwards even when execution fails.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from card_enrichment.core.exceptions import ConfigurationError, SandboxError
from card_enrichment.core.http_client import create_client

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.onkernel.com"

# Request timeout on top of the script's own timeout_sec
HTTP_TIMEOUT_MARGIN = 30.0


@dataclass
class SandboxResult:
    """Payload returned by an execution.

    Attributes:
        success: Whether the script ran to completion.
        result: The script's return value, decoded from JSON when it was
            returned as a string.
        error: Error message when success is False.
    """

    success: bool
    result: Any = None
    error: Optional[str] = None


class BrowserSandbox:
    """Client for the remote browser execution service."""

    def __init__(self, api_key: Optional[str], api_url: str = DEFAULT_API_URL):
        if not api_key:
            raise ConfigurationError("KERNEL_API_KEY is required for the browser sandbox")
        self._api_key = api_key
        self._api_url = api_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def _create_session(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            f"{self._api_url}/browsers",
            headers=self._headers(),
            json={"stealth": True},
        )
        response.raise_for_status()
        session_id = response.json().get("session_id")
        if not session_id:
            raise SandboxError("Sandbox did not return a session id")
        return session_id

    async def _delete_session(self, client: httpx.AsyncClient, session_id: str) -> None:
        try:
            response = await client.delete(
                f"{self._api_url}/browsers/{session_id}", headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Failed to clean up browser session %s: %s", session_id, e)

    async def execute(self, code: str, timeout_sec: int) -> SandboxResult:
        """Run Playwright `code` in a new browser session.

        Args:
            code: Script body; `page` is in scope and its return value is
                the execution result.
            timeout_sec: Hard execution limit enforced by the service.

        Returns:
            SandboxResult with the decoded return value.

        Raises:
            SandboxError: If the session cannot be created or the service
                is unreachable.
        """
        timeout = httpx.Timeout(timeout_sec + HTTP_TIMEOUT_MARGIN)
        async with create_client(timeout=timeout, accept="application/json") as client:
            try:
                session_id = await self._create_session(client)
            except httpx.HTTPError as e:
                raise SandboxError(f"kernel_execution_failed: cannot create session: {e}")

            try:
                response = await client.post(
                    f"{self._api_url}/browsers/{session_id}/playwright/execute",
                    headers=self._headers(),
                    json={"code": code, "timeout_sec": timeout_sec},
                )
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise SandboxError(f"kernel_execution_failed: {e}")
            finally:
                await self._delete_session(client, session_id)

        if not payload.get("success"):
            return SandboxResult(
                success=False, error=payload.get("error") or "kernel_execution_failed"
            )

        result = payload.get("result")
        if isinstance(result, str):
            try:
                result = json.loads(result)
            except json.JSONDecodeError:
                pass
        return SandboxResult(success=True, result=result)


@dataclass
class Frame:
    """A rasterized frame returned by an in-page script."""

    data: bytes
    mime_type: str
    width: int
    height: int
    original_width: Optional[int] = None
    original_height: Optional[int] = None
    duration: Optional[float] = None


def frame_from_result(result: SandboxResult) -> Frame:
    """Decode the {success, data, width, height, mimeType} script payload.

    Raises:
        SandboxError: If execution or the script itself reported failure,
            or the payload is malformed.
    """
    if not result.success:
        raise SandboxError(result.error or "kernel_execution_failed")

    payload = result.result
    if not isinstance(payload, dict):
        raise SandboxError("Sandbox returned no frame payload")
    if not payload.get("success"):
        raise SandboxError(f"Frame capture failed: {payload.get('error') or 'unknown error'}")

    try:
        data = base64.b64decode(payload["data"], validate=True)
        return Frame(
            data=data,
            mime_type=payload.get("mimeType") or "image/png",
            width=int(payload["width"]),
            height=int(payload["height"]),
            original_width=_positive_int(payload.get("originalWidth")),
            original_height=_positive_int(payload.get("originalHeight")),
            duration=payload.get("duration") or None,
        )
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise SandboxError(f"Malformed frame payload: {e}")


def _positive_int(value: Any) -> Optional[int]:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None
