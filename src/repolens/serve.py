"""Local HTTP server exposing stored analyses as JSON.

Read-only pull interface for renderers and browsers:

    GET /api/repos
    GET /api/repos/<id>
    GET /api/repos/<id>/graph[?related=1]
    GET /api/repos/<id>/related/<subsystem>[?max=N]
    GET /api/sessions/<id>/messages[?limit=N]

Subsystem names may contain `/`; send them percent-encoded.
"""

from __future__ import annotations

import json
import threading
import webbrowser
from functools import partial
from http.server import HTTPServer, SimpleHTTPRequestHandler
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

from . import config
from .errors import InvalidInputError, NotFoundError, RepoLensError
from .graph import DEFAULT_MAX_RELATED, build_graph, related_subsystems
from .logger import get_logger
from .store import DocumentStore

logger = get_logger(__name__)


def repo_payload(store: DocumentStore, repo_id: str) -> dict[str, Any]:
    repo = store.require_repository(repo_id)
    analysis = store.get_analysis(repo_id)
    return {
        "repository": repo.to_dict(),
        "analysis": analysis.to_dict() if analysis else None,
    }


def graph_payload(store: DocumentStore, repo_id: str, include_related: bool = False) -> dict[str, Any]:
    store.require_repository(repo_id)
    analysis = store.get_analysis(repo_id)
    if analysis is None:
        raise NotFoundError(f"No completed analysis for {repo_id}")
    return build_graph(analysis.subsystems, analysis.framework, include_related).to_dict()


def related_payload(store: DocumentStore, repo_id: str, subsystem: str, max_results: int) -> dict[str, Any]:
    store.require_repository(repo_id)
    analysis = store.get_analysis(repo_id)
    if analysis is None:
        raise NotFoundError(f"No completed analysis for {repo_id}")
    target = analysis.get_subsystem(subsystem)
    if target is None:
        raise NotFoundError(f"Subsystem {subsystem!r} not found in {repo_id}")
    return {
        "subsystem": target.name,
        "related": related_subsystems(target.name, analysis.subsystems, max_results),
    }


def messages_payload(store: DocumentStore, session_id: str, limit: int | None) -> dict[str, Any]:
    session = store.get_session(session_id)
    if session is None:
        raise NotFoundError(f"Unknown chat session: {session_id}")
    session.messages = store.load_messages(session_id, limit)
    return session.to_dict()


def _int_param(query: dict[str, list[str]], name: str, default: int | None) -> int | None:
    values = query.get(name)
    if not values:
        return default
    try:
        return int(values[0])
    except ValueError as e:
        raise InvalidInputError(f"Query parameter {name} must be an integer") from e


class RepoLensHandler(SimpleHTTPRequestHandler):
    """HTTP handler that serves API data from the document store."""

    def __init__(self, *args, store: DocumentStore, **kwargs):
        self._store = store
        super().__init__(*args, **kwargs)

    def do_GET(self):
        url = urlsplit(self.path)
        parts = [unquote(p) for p in url.path.strip("/").split("/") if p]
        query = parse_qs(url.query)
        try:
            payload = self._route(parts, query)
        except NotFoundError as e:
            self._send_json({"error": e.message, "category": e.category}, status=404)
            return
        except InvalidInputError as e:
            self._send_json({"error": e.message, "category": e.category}, status=400)
            return
        except RepoLensError as e:
            logger.error("Request %s failed: %s", self.path, e.message)
            self._send_json({"error": e.message, "category": e.category}, status=500)
            return
        self._send_json(payload)

    def _route(self, parts: list[str], query: dict[str, list[str]]) -> Any:
        store = self._store
        if parts == ["api", "repos"]:
            return {"repositories": [r.to_dict() for r in store.list_repositories()]}
        if len(parts) == 3 and parts[:2] == ["api", "repos"]:
            return repo_payload(store, parts[2])
        if len(parts) == 4 and parts[:2] == ["api", "repos"] and parts[3] == "graph":
            related = query.get("related", ["0"])[0].lower() in ("1", "true", "yes")
            return graph_payload(store, parts[2], include_related=related)
        if len(parts) >= 5 and parts[:2] == ["api", "repos"] and parts[3] == "related":
            # Tolerate an unencoded `/` inside the subsystem name
            subsystem = "/".join(parts[4:])
            max_results = _int_param(query, "max", DEFAULT_MAX_RELATED)
            return related_payload(store, parts[2], subsystem, max_results)
        if len(parts) == 4 and parts[:2] == ["api", "sessions"] and parts[3] == "messages":
            limit = _int_param(query, "limit", config.CHAT_HISTORY_LIMIT)
            return messages_payload(store, parts[2], limit)
        raise NotFoundError(f"No route for {self.path}")

    def _send_json(self, data: Any, status: int = 200):
        content = json.dumps(data).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(content)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(content)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def make_server(store: DocumentStore, port: int = 8420, host: str = "127.0.0.1") -> HTTPServer:
    handler = partial(RepoLensHandler, store=store)
    HTTPServer.allow_reuse_address = True
    return HTTPServer((host, port), handler)


def start_server(
    store: DocumentStore,
    port: int = 8420,
    open_browser: bool = False,
) -> None:
    """Serve the JSON API until interrupted.

    Args:
        store: Open document store to read from
        port: Port to serve on
        open_browser: Whether to open the repository list in a browser
    """
    server = make_server(store, port)
    url = f"http://localhost:{port}/api/repos"

    if open_browser:
        threading.Timer(0.5, lambda: webbrowser.open(url)).start()

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
