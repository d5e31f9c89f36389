"""Async REST client for the OpenWhisk platform API.

Covers the handful of endpoints the bridge needs: read/write/delete an
action, invoke it (blocking or not) and read the runtime manifest.
Satisfies :class:`~wskdebug_core.protocol.PlatformClient`.
"""

from __future__ import annotations

import base64
import logging
from typing import Any
from urllib.parse import quote

import httpx

from wskdebug_core.config import PlatformConfig
from wskdebug_core.errors import RemoteStateError
from wskdebug_core.models import ActionDefinition, ActionRef
from wskdebug_core.protocol import TIMEOUT_REQUEST, InvokeResponse

logger = logging.getLogger(__name__)

_API_PATH = "/api/v1"


class OpenWhiskClient:
    """Thin async wrapper over ``httpx.AsyncClient``.

    Usage::

        async with OpenWhiskClient(PlatformConfig.load()) as client:
            action = await client.get_action(ActionRef.parse("myaction"))
    """

    def __init__(
        self,
        config: PlatformConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        auth = base64.b64encode(config.auth.encode("utf-8")).decode("ascii")
        self._http = httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "Authorization": f"Basic {auth}",
                "Accept": "application/json",
            },
            timeout=TIMEOUT_REQUEST,
            transport=transport,
        )

    async def __aenter__(self) -> OpenWhiskClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    @staticmethod
    def _action_path(ref: ActionRef) -> str:
        return (
            f"{_API_PATH}/namespaces/{quote(ref.namespace, safe='')}"
            f"/actions/{quote(ref.name, safe='/')}"
        )

    async def get_action(self, ref: ActionRef) -> ActionDefinition | None:
        """Return the action including its code, or ``None`` on 404."""
        resp = await self._request("GET", self._action_path(ref), params={"code": "true"})
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"get action {ref}")
        return ActionDefinition.from_json(resp.json())

    async def put_action(self, ref: ActionRef, definition: ActionDefinition) -> None:
        resp = await self._request(
            "PUT",
            self._action_path(ref),
            params={"overwrite": "true"},
            json=definition.to_update_body(),
        )
        self._raise_for_status(resp, f"update action {ref}")
        logger.debug("Updated action %s", ref)

    async def delete_action(self, ref: ActionRef) -> None:
        resp = await self._request("DELETE", self._action_path(ref))
        if resp.status_code == 404:
            logger.debug("Action %s already gone", ref)
            return
        self._raise_for_status(resp, f"delete action {ref}")
        logger.debug("Deleted action %s", ref)

    async def invoke(
        self,
        ref: ActionRef,
        params: dict[str, Any],
        blocking: bool = True,
        timeout: float | None = None,
    ) -> InvokeResponse:
        """Invoke *ref*.  Never raises on HTTP error statuses.

        The agent protocol rides on error statuses (``502``), so the caller
        gets the raw status + body and classifies it itself.  Transport
        failures (connect errors, timeouts) propagate as ``httpx`` errors.
        """
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(TIMEOUT_REQUEST, read=timeout)
        resp = await self._http.post(
            self._action_path(ref),
            params={"blocking": "true" if blocking else "false"},
            json=params,
            **kwargs,
        )
        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text}
        logger.debug("invoke %s -> %d", ref, resp.status_code)
        return InvokeResponse(resp.status_code, body)

    # ------------------------------------------------------------------
    # Runtimes
    # ------------------------------------------------------------------

    async def list_runtimes(self) -> dict[str, Any]:
        """Return the ``runtimes`` section of the platform manifest (``GET /``)."""
        resp = await self._request("GET", "/")
        self._raise_for_status(resp, "read runtime manifest")
        return resp.json().get("runtimes", {})

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteStateError(
                f"{method} {path} failed: {exc.__class__.__name__}: {exc}"
            ) from exc

    @staticmethod
    def _raise_for_status(resp: httpx.Response, what: str) -> None:
        if resp.is_success:
            return
        try:
            detail = resp.json().get("error", resp.text)
        except ValueError:
            detail = resp.text
        raise RemoteStateError(f"Could not {what}: HTTP {resp.status_code} {detail}")
