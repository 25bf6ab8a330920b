from __future__ import annotations

import time
from typing import Any

import httpx

from votesim.core.models import SubmissionOutcome, SubmissionResult, Tally, VoteChoice
from votesim.exceptions import TargetError, ValidationError
from votesim.logger import Logger, session_logger

# Error bodies the voting API returns as {"error": "<message>"}.
DUPLICATE_VOTE_ERROR = "CPF already voted for this agenda"
SESSION_CLOSED_ERROR = "Voting session is closed"

DEFAULT_API_PREFIX = "/api/v1"
HEALTH_PATH = "/actuator/health"
DEFAULT_FAST_FAIL_MS = 10.0


class TargetClient:
    """Typed wrapper around the voting API's five operations.

    Every call carries the configured timeout and is attempted exactly once.
    Retrying a vote would corrupt the first-attempt bookkeeping used for race
    detection, so retries are left to scenarios.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        api_prefix: str = DEFAULT_API_PREFIX,
        fast_fail_ms: float = DEFAULT_FAST_FAIL_MS,
        logger: Logger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValidationError("timeout_seconds must be > 0")

        self._logger = logger or session_logger
        self._prefix = "/" + api_prefix.strip("/") if api_prefix.strip("/") else ""
        self._fast_fail_ms = fast_fail_ms
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
            headers={
                "User-Agent": "votesim/0.1",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "TargetClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _path(self, suffix: str) -> str:
        return f"{self._prefix}{suffix}"

    async def create_topic(self, title: str, description: str) -> str:
        try:
            response = await self._http.post(
                self._path("/agendas"),
                json={"title": title, "description": description},
            )
        except httpx.HTTPError as exc:
            raise TargetError(
                "create topic request failed",
                operation="create_topic",
                details={"error_type": _classify_exception(exc), "error": str(exc)},
            ) from exc

        payload = _json_body(response)
        topic_id = payload.get("id")
        if response.status_code != 201 or topic_id is None:
            raise TargetError(
                "create topic rejected",
                operation="create_topic",
                status_code=response.status_code,
                details={"error": payload.get("error")},
            )
        return str(topic_id)

    async def open_window(self, topic_id: str, duration_minutes: int) -> bool:
        try:
            response = await self._http.post(
                self._path(f"/agendas/{topic_id}/voting-session"),
                json={"durationMinutes": duration_minutes},
            )
        except httpx.HTTPError as exc:
            self._logger.warning(
                "sim.open_window_failed",
                event="sim.open_window_failed",
                topic_id=topic_id,
                error_type=_classify_exception(exc),
                error=str(exc),
            )
            return False

        if response.status_code != 201:
            self._logger.warning(
                "sim.open_window_rejected",
                event="sim.open_window_rejected",
                topic_id=topic_id,
                status_code=response.status_code,
                error=_json_body(response).get("error"),
            )
            return False

        echoed = _json_body(response).get("agendaId")
        return echoed is None or str(echoed) == str(topic_id)

    async def submit_vote(self, topic_id: str, identifier: str, choice: VoteChoice) -> SubmissionResult:
        """Submit one vote and classify the response. Never raises for network errors."""
        start = time.monotonic()
        try:
            response = await self._http.post(
                self._path(f"/agendas/{topic_id}/votes"),
                json={"cpf": identifier, "vote": choice.value},
            )
        except httpx.HTTPError as exc:
            return SubmissionResult(
                outcome=SubmissionOutcome.TRANSPORT_ERROR,
                status_code=None,
                duration_ms=_elapsed_ms(start),
                reason=_classify_exception(exc),
                error=str(exc),
            )

        elapsed = (time.monotonic() - start) * 1000.0
        body = _json_body(response)
        outcome, reason = _classify_vote_response(
            response.status_code,
            body,
            elapsed_ms=elapsed,
            fast_fail_ms=self._fast_fail_ms,
        )
        return SubmissionResult(
            outcome=outcome,
            status_code=response.status_code,
            duration_ms=int(elapsed),
            reason=reason,
            error=None if outcome == SubmissionOutcome.ACCEPTED else _error_text(body, response),
        )

    async def get_tally(self, topic_id: str) -> Tally:
        try:
            response = await self._http.get(self._path(f"/agendas/{topic_id}/results"))
        except httpx.HTTPError as exc:
            raise TargetError(
                "tally request failed",
                operation="get_tally",
                details={"error_type": _classify_exception(exc), "error": str(exc)},
            ) from exc

        if response.status_code != 200:
            raise TargetError(
                "tally request rejected",
                operation="get_tally",
                status_code=response.status_code,
                details={"error": _json_body(response).get("error")},
            )

        payload = _json_body(response)
        yes_votes = payload.get("yesVotes")
        no_votes = payload.get("noVotes")
        if not isinstance(yes_votes, int) or not isinstance(no_votes, int):
            raise TargetError(
                "tally response missing vote counts",
                operation="get_tally",
                status_code=response.status_code,
                details={"payload": payload},
            )
        return Tally(yes_count=yes_votes, no_count=no_votes)

    async def health_check(self) -> bool:
        try:
            response = await self._http.get(HEALTH_PATH)
        except httpx.HTTPError as exc:
            self._logger.warning(
                "sim.health_check_failed",
                event="sim.health_check_failed",
                error_type=_classify_exception(exc),
                error=str(exc),
            )
            return False
        return response.status_code == 200


# ---------------------------------------------------------------------------
# Helpers: response classification
# ---------------------------------------------------------------------------

def _classify_vote_response(
    status_code: int,
    body: dict[str, Any],
    *,
    elapsed_ms: float,
    fast_fail_ms: float = DEFAULT_FAST_FAIL_MS,
) -> tuple[SubmissionOutcome, str | None]:
    """Map a vote submission response to (outcome, reason)."""
    if 200 <= status_code < 300:
        return SubmissionOutcome.ACCEPTED, None
    if status_code == 429:
        return SubmissionOutcome.RATE_LIMITED, "rate_limited"
    if status_code == 503 and elapsed_ms < fast_fail_ms:
        return SubmissionOutcome.CIRCUIT_OPEN, "circuit_open"

    if 400 <= status_code < 500:
        message = str(body.get("error") or "")
        if _matches(message, DUPLICATE_VOTE_ERROR, "already voted"):
            return SubmissionOutcome.REJECTED_DUPLICATE, "duplicate"
        if _matches(message, SESSION_CLOSED_ERROR, "session is closed"):
            return SubmissionOutcome.REJECTED_OTHER, "session_expired"
        return SubmissionOutcome.REJECTED_OTHER, _classify_http_error(status_code)

    return SubmissionOutcome.TRANSPORT_ERROR, _classify_http_error(status_code)


def _matches(message: str, exact: str, fragment: str) -> bool:
    return message == exact or fragment in message.lower()


def _classify_http_error(status_code: int) -> str | None:
    """Map an HTTP status code to a canonical error_type, or None if success."""
    if 200 <= status_code < 400:
        return None
    if status_code == 401:
        return "auth_unauthorized"
    if status_code == 403:
        return "auth_forbidden"
    if status_code == 404:
        return "not_found"
    if status_code == 429:
        return "rate_limited"
    if 400 <= status_code < 500:
        return "client_error"
    if 500 <= status_code < 600:
        return "server_error"
    return f"http_{status_code}"


def _classify_exception(exc: Exception) -> str:
    """Map a network-level exception to a canonical error_type."""
    if isinstance(exc, httpx.TimeoutException):
        return "network_timeout"
    if isinstance(exc, httpx.ConnectError):
        return "network_connect"
    if isinstance(exc, (httpx.RemoteProtocolError, httpx.LocalProtocolError)):
        return "network_protocol"
    if isinstance(exc, httpx.HTTPError):
        return "network_error"
    return type(exc).__name__


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _error_text(body: dict[str, Any], response: httpx.Response) -> str:
    error = body.get("error")
    if error:
        return str(error)
    return response.text[:200]


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
