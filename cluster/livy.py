"""Async client for the Livy REST job-submission interface.

Livy runs on the cluster master (default port 8998). A transform run uses
the interactive API:

    POST   /sessions                          {"kind": "pyspark", "pyFiles": [...]}
    GET    /sessions/{id}/state               {"id": 0, "state": "idle"}
    POST   /sessions/{id}/statements          {"code": "..."}
    GET    /sessions/{id}/statements/{sid}    {"state": "available", "output": {...}}
    DELETE /sessions/{id}

Ids come from the response body, falling back to the Location header.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

import aiohttp

from utils.retry import RetryPolicy, retry_async_call

logger = logging.getLogger(__name__)

DEFAULT_LIVY_PORT = 8998

SESSION_READY_STATES = {"idle"}
SESSION_FAILED_STATES = {"error", "dead", "killed", "success", "shutting_down"}
STATEMENT_FAILED_STATES = {"error", "cancelling", "cancelled"}


class LivyError(Exception):
    """Base exception for Livy operations."""


class LivySessionError(LivyError):
    """Raised when a session ends up in a terminal state before it is used."""


class TransformJobError(LivyError):
    """Raised when the submitted statement finishes with an error."""


def _id_from(body: Dict[str, Any], response: aiohttp.ClientResponse) -> int:
    if isinstance(body.get("id"), int):
        return body["id"]
    location = response.headers.get("Location", "")
    tail = location.rstrip("/").rsplit("/", 1)[-1]
    if tail.isdigit():
        return int(tail)
    raise LivyError(f"Livy response carries no id (body={body!r}, Location={location!r})")


class LivyClient:
    """Client for one Livy server.

    Usage:
        async with LivyClient("http://cluster-m:8998") as livy:
            session_id = await livy.create_session()
    """

    def __init__(
        self,
        base_url: str,
        *,
        policy: RetryPolicy = RetryPolicy(max_attempts=3, base_delay_seconds=2.0),
        timeout_seconds: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._policy = policy
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> LivyClient:
        # Livy rejects writes without X-Requested-By when CSRF protection is on.
        self._session = aiohttp.ClientSession(
            timeout=self._timeout,
            headers={"Content-Type": "application/json", "X-Requested-By": "gdelt-pipeline"},
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("LivyClient not initialized. Use 'async with LivyClient(...)'")
        return self._session

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> tuple[Dict[str, Any], aiohttp.ClientResponse]:
        url = f"{self._base_url}{path}"

        async def _call():
            async with self.session.request(method, url, json=payload) as response:
                response.raise_for_status()
                body = await response.json(content_type=None)
                return (body or {}), response

        return await retry_async_call(
            _call,
            policy=self._policy,
            retry_on=(aiohttp.ClientConnectionError, asyncio.TimeoutError),
            on_retry=lambda attempt, exc: logger.warning(f"[Livy] Retry {attempt} for {method} {path}: {exc}"),
        )

    async def create_session(
        self,
        kind: str = "pyspark",
        py_files: Sequence[str] = (),
        conf: Optional[Dict[str, str]] = None,
        name: Optional[str] = None,
    ) -> int:
        """Create an interactive session and return its id."""
        payload: Dict[str, Any] = {"kind": kind}
        if py_files:
            payload["pyFiles"] = list(py_files)
        if conf:
            payload["conf"] = dict(conf)
        if name:
            payload["name"] = name

        body, response = await self._request("POST", "/sessions", payload)
        session_id = _id_from(body, response)
        logger.info(f"[Livy] Created {kind} session {session_id} on {self._base_url}")
        return session_id

    async def session_state(self, session_id: int) -> str:
        body, _ = await self._request("GET", f"/sessions/{session_id}/state")
        return str(body.get("state", "unknown"))

    async def session_ready(self, session_id: int) -> bool:
        """True once the session is idle.

        Raises:
            LivySessionError: The session reached a terminal state.
        """
        state = await self.session_state(session_id)
        if state in SESSION_FAILED_STATES:
            raise LivySessionError(f"Session {session_id} is {state}")
        logger.debug(f"[Livy] Session {session_id} state: {state}")
        return state in SESSION_READY_STATES

    async def submit_statement(self, session_id: int, code: str) -> int:
        """Post code to a session and return the statement id."""
        body, response = await self._request("POST", f"/sessions/{session_id}/statements", {"code": code})
        statement_id = _id_from(body, response)
        logger.info(f"[Livy] Submitted statement {statement_id} to session {session_id}")
        return statement_id

    async def get_statement(self, session_id: int, statement_id: int) -> Dict[str, Any]:
        body, _ = await self._request("GET", f"/sessions/{session_id}/statements/{statement_id}")
        return body

    async def statement_result(self, session_id: int, statement_id: int) -> Optional[Dict[str, Any]]:
        """The statement output once it is available, else None.

        Raises:
            TransformJobError: The statement failed or was cancelled.
        """
        statement = await self.get_statement(session_id, statement_id)
        state = statement.get("state")

        if state in STATEMENT_FAILED_STATES:
            raise TransformJobError(f"Statement {statement_id} ended in state {state}")
        if state != "available":
            return None

        output = statement.get("output") or {}
        if output.get("status") == "error":
            traceback = "".join(output.get("traceback") or [])
            raise TransformJobError(
                f"Statement {statement_id} failed: {output.get('ename')}: {output.get('evalue')}\n{traceback}"
            )
        # Callers poll for a truthy result, so never hand back an empty dict.
        return output or {"status": "ok"}

    async def delete_session(self, session_id: int) -> bool:
        """Delete a session; False if it no longer exists."""
        try:
            await self._request("DELETE", f"/sessions/{session_id}")
            logger.info(f"[Livy] Deleted session {session_id}")
            return True
        except aiohttp.ClientResponseError as e:
            if e.status == 404:
                return False
            raise
