from __future__ import annotations

import json
import os
import re
import threading
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from votesim.core.identifier import IdentifierCodec
from votesim.core.target_client import DUPLICATE_VOTE_ERROR, HEALTH_PATH, SESSION_CLOSED_ERROR
from votesim.logger import Logger, session_logger

UNABLE_TO_VOTE_ERROR = "CPF is not able to vote"
SESSION_NOT_FOUND_ERROR = "Voting session not found"
AGENDA_NOT_FOUND_ERROR = "Agenda not found"

_VOTE_CHOICES = ("Yes", "No")


@dataclass
class _Agenda:
    id: int
    title: str
    description: str
    created_at: float
    session_end: float | None = None
    votes: dict[str, str] = field(default_factory=dict)
    phantom_yes: int = 0
    phantom_no: int = 0


class VotingState:
    """In-memory voting API state. All mutations happen under one lock."""

    def __init__(self, *, seconds_per_minute: float = 60.0, validate_identifiers: bool = True) -> None:
        self.seconds_per_minute = seconds_per_minute
        self.validate_identifiers = validate_identifiers
        self.fail_topic_creates = 0
        self._lock = threading.Lock()
        self._agendas: dict[int, _Agenda] = {}
        self._next_id = 1

    def create_agenda(self, title: str, description: str) -> tuple[int, dict[str, Any]]:
        with self._lock:
            if self.fail_topic_creates > 0:
                self.fail_topic_creates -= 1
                return HTTPStatus.SERVICE_UNAVAILABLE, {"error": "Agenda store unavailable"}
            agenda = _Agenda(id=self._next_id, title=title, description=description, created_at=time.time())
            self._agendas[agenda.id] = agenda
            self._next_id += 1
            return HTTPStatus.CREATED, {"id": agenda.id, "title": title, "description": description}

    def open_session(self, agenda_id: int, duration_minutes: int) -> tuple[int, dict[str, Any]]:
        if duration_minutes < 1:
            return HTTPStatus.BAD_REQUEST, {"error": "Duration must be at least 1 minute"}
        with self._lock:
            agenda = self._agendas.get(agenda_id)
            if agenda is None:
                return HTTPStatus.NOT_FOUND, {"error": AGENDA_NOT_FOUND_ERROR}
            if agenda.session_end is not None:
                return HTTPStatus.BAD_REQUEST, {"error": "Voting session already exists"}
            now = time.time()
            agenda.session_end = now + duration_minutes * self.seconds_per_minute
            return HTTPStatus.CREATED, {
                "agendaId": agenda.id,
                "startTime": now,
                "endTime": agenda.session_end,
            }

    def submit_vote(self, agenda_id: int, cpf: str, vote: str) -> tuple[int, dict[str, Any]]:
        if vote not in _VOTE_CHOICES:
            return HTTPStatus.BAD_REQUEST, {"error": "Vote must be Yes or No"}
        if self.validate_identifiers and not IdentifierCodec.is_valid(cpf):
            return HTTPStatus.NOT_FOUND, {"error": UNABLE_TO_VOTE_ERROR}

        with self._lock:
            agenda = self._agendas.get(agenda_id)
            if agenda is None or agenda.session_end is None:
                return HTTPStatus.NOT_FOUND, {"error": SESSION_NOT_FOUND_ERROR}
            if time.time() > agenda.session_end:
                return HTTPStatus.BAD_REQUEST, {"error": SESSION_CLOSED_ERROR}
            if cpf in agenda.votes:
                return HTTPStatus.BAD_REQUEST, {"error": DUPLICATE_VOTE_ERROR}
            agenda.votes[cpf] = vote
            return HTTPStatus.CREATED, {"agendaId": agenda.id, "cpf": cpf, "vote": vote}

    def results(self, agenda_id: int) -> tuple[int, dict[str, Any]]:
        with self._lock:
            agenda = self._agendas.get(agenda_id)
            if agenda is None:
                return HTTPStatus.NOT_FOUND, {"error": AGENDA_NOT_FOUND_ERROR}
            yes_votes = sum(1 for v in agenda.votes.values() if v == "Yes") + agenda.phantom_yes
            no_votes = sum(1 for v in agenda.votes.values() if v == "No") + agenda.phantom_no
            is_open = agenda.session_end is not None and time.time() <= agenda.session_end
            return HTTPStatus.OK, {
                "agendaId": agenda.id,
                "yesVotes": yes_votes,
                "noVotes": no_votes,
                "status": "OPEN" if is_open else "CLOSED",
            }

    def inject_phantom_vote(self, agenda_id: int, vote: str = "Yes") -> None:
        """Count a vote nobody submitted, to simulate a double-counting target."""
        with self._lock:
            agenda = self._agendas[agenda_id]
            if vote == "Yes":
                agenda.phantom_yes += 1
            else:
                agenda.phantom_no += 1


class VotingFixtureServer:
    """Lightweight HTTP server implementing the voting API contract in memory.

    Lets the simulator and tests run without a real target. ``seconds_per_minute``
    scales voting windows so expiry can be exercised in well under a minute.

    Env defaults:
      VOTESIM_FIXTURE_HOST=127.0.0.1
    """

    def __init__(
        self,
        *,
        port: int = 0,
        api_prefix: str = "/api/v1",
        seconds_per_minute: float = 60.0,
        validate_identifiers: bool = True,
        logger: Logger | None = None,
    ) -> None:
        self._logger = logger or session_logger
        self.port = port
        self.state = VotingState(seconds_per_minute=seconds_per_minute, validate_identifiers=validate_identifiers)
        self._prefix = "/" + api_prefix.strip("/") if api_prefix.strip("/") else ""
        self._host = os.environ.get("VOTESIM_FIXTURE_HOST", "127.0.0.1")

        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        state = self.state
        prefix = re.escape(self._prefix)
        agendas_re = re.compile(rf"^{prefix}/agendas$")
        session_re = re.compile(rf"^{prefix}/agendas/(\d+)/voting-session$")
        votes_re = re.compile(rf"^{prefix}/agendas/(\d+)/votes$")
        results_re = re.compile(rf"^{prefix}/agendas/(\d+)/results$")

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                path = self.path.split("?", 1)[0]
                if path == HEALTH_PATH:
                    self._send(HTTPStatus.OK, {"status": "UP"})
                    return
                match = results_re.match(path)
                if match:
                    self._send(*state.results(int(match.group(1))))
                    return
                self._send(HTTPStatus.NOT_FOUND, {"error": "Not found"})

            def do_POST(self) -> None:  # noqa: N802
                path = self.path.split("?", 1)[0]
                body = self._read_json()
                if body is None:
                    self._send(HTTPStatus.BAD_REQUEST, {"error": "Malformed JSON body"})
                    return

                if agendas_re.match(path):
                    title = str(body.get("title") or "").strip()
                    if not title:
                        self._send(HTTPStatus.BAD_REQUEST, {"error": "Title is required"})
                        return
                    self._send(*state.create_agenda(title, str(body.get("description") or "")))
                    return

                match = session_re.match(path)
                if match:
                    duration = body.get("durationMinutes") or 1
                    if not isinstance(duration, int):
                        self._send(HTTPStatus.BAD_REQUEST, {"error": "durationMinutes must be an integer"})
                        return
                    self._send(*state.open_session(int(match.group(1)), duration))
                    return

                match = votes_re.match(path)
                if match:
                    self._send(*state.submit_vote(int(match.group(1)), str(body.get("cpf") or ""), str(body.get("vote") or "")))
                    return

                self._send(HTTPStatus.NOT_FOUND, {"error": "Not found"})

            def _read_json(self) -> dict[str, Any] | None:
                length = int(self.headers.get("Content-Length") or 0)
                raw = self.rfile.read(length) if length else b"{}"
                try:
                    payload = json.loads(raw.decode("utf-8") or "{}")
                except (UnicodeDecodeError, json.JSONDecodeError):
                    return None
                return payload if isinstance(payload, dict) else None

            def _send(self, status: int, payload: dict[str, Any]) -> None:
                data = json.dumps(payload).encode("utf-8")
                self.send_response(int(status))
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            def log_message(self, format, *args):  # noqa: A002, ARG002
                pass

        class ReusableHTTPServer(ThreadingHTTPServer):
            allow_reuse_address = True
            daemon_threads = True

        self._server = ReusableHTTPServer((self._host, self.port), Handler)
        self.port = int(self._server.server_port)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

        self._logger.info(
            "sim.fixture_target_started",
            event="sim.fixture_target_started",
            host=self._host,
            port=self.port,
            api_prefix=self._prefix,
            seconds_per_minute=self.state.seconds_per_minute,
        )

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

        self._logger.info(
            "sim.fixture_target_stopped",
            event="sim.fixture_target_stopped",
            port=self.port,
        )

    @property
    def base_url(self) -> str:
        return f"http://{self._host}:{self.port}"

    def __enter__(self) -> "VotingFixtureServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
        return None
