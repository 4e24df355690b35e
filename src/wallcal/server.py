from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlsplit
from zoneinfo import ZoneInfo

from .cache import EventCacheManager
from .config import AppConfig
from .errors import CalendarSyncError
from .layout import GRID_VIEWS, layout_grid, weeks_for_view

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "NOT_CONNECTED": HTTPStatus.CONFLICT,
    "NO_SOURCES": HTTPStatus.CONFLICT,
    "INVALID_RANGE": HTTPStatus.BAD_REQUEST,
}


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


class EventsRequestHandler(BaseHTTPRequestHandler):
    manager: EventCacheManager
    config_provider: Callable[[], AppConfig]
    api_token: str | None = None

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_json(self, status: int, payload: dict[str, Any]) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_error(self, exc: CalendarSyncError) -> None:
        status = ERROR_STATUS.get(exc.code, HTTPStatus.BAD_GATEWAY)
        self._send_json(status, exc.to_dict())

    def _check_auth(self) -> bool:
        if not self.api_token:
            return True
        provided = self.headers.get("X-Api-Token", "")
        return provided == self.api_token

    def _read_json(self) -> dict[str, Any]:
        content_length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(content_length) if content_length else b"{}"
        data = json.loads(raw.decode("utf-8") or "{}")
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        return data

    def _grid(self, query: dict[str, list[str]]) -> dict[str, Any]:
        cfg = self.config_provider()
        tz = ZoneInfo(cfg.timezone)
        view = (query.get("view") or ["month"])[0]
        if view not in GRID_VIEWS:
            raise ValueError(f"Unknown view: {view}")
        raw_date = (query.get("date") or [""])[0]
        anchor = date.fromisoformat(raw_date) if raw_date else datetime.now(tz).date()
        if "portrait" in query:
            portrait = _truthy(query["portrait"][0])
        else:
            portrait = cfg.display.narrow_portrait

        weeks = weeks_for_view(view, anchor)
        cache = self.manager.query()
        layouts = layout_grid(weeks, self.manager.merged_events(), tz, narrow_portrait=portrait)
        return {
            "view": view,
            "date": anchor.isoformat(),
            "range": cache.range.to_dict() if cache.range else None,
            "updatedAt": cache.updated_at.isoformat() if cache.updated_at else None,
            "weeks": [w.to_dict() for w in layouts],
        }

    def do_GET(self) -> None:  # noqa: N802
        url = urlsplit(self.path)
        if url.path == "/api/health":
            self._send_json(HTTPStatus.OK, {"ok": True})
            return

        if not self._check_auth():
            self._send_json(HTTPStatus.UNAUTHORIZED, {"error": "unauthorized"})
            return

        try:
            if url.path == "/api/events":
                cache = self.manager.query()
                payload = cache.to_dict()
                payload["merged"] = [e.to_dict() for e in self.manager.merged_events()]
            elif url.path == "/api/events/grid":
                payload = self._grid(parse_qs(url.query))
            else:
                self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
                return
        except ValueError as exc:
            self._send_json(HTTPStatus.BAD_REQUEST, {"error": str(exc)})
            return

        self._send_json(HTTPStatus.OK, payload)

    def do_POST(self) -> None:  # noqa: N802
        if not self._check_auth():
            self._send_json(HTTPStatus.UNAUTHORIZED, {"error": "unauthorized"})
            return

        url = urlsplit(self.path)
        try:
            data = self._read_json()
            if url.path == "/api/events/sync":
                result = self.manager.sync().to_dict()
            elif url.path == "/api/events/extend":
                result = self.manager.extend(
                    time_min=data.get("timeMin"),
                    time_max=data.get("timeMax"),
                    view=data.get("view"),
                ).to_dict()
            else:
                self._send_json(HTTPStatus.NOT_FOUND, {"error": "not_found"})
                return
        except CalendarSyncError as exc:
            self._send_error(exc)
            return
        except ValueError as exc:
            self._send_json(HTTPStatus.BAD_REQUEST, {"error": str(exc)})
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("Calendar request %s failed", url.path)
            self._send_json(HTTPStatus.BAD_GATEWAY, {"error": "SYNC_FAILED", "message": str(exc)})
            return

        self._send_json(HTTPStatus.OK, result)


def make_server(
    manager: EventCacheManager,
    config_provider: Callable[[], AppConfig],
    host: str = "127.0.0.1",
    port: int = 8780,
    api_token: str | None = None,
) -> ThreadingHTTPServer:
    handler = type(
        "BoundEventsRequestHandler",
        (EventsRequestHandler,),
        {
            "manager": manager,
            "config_provider": staticmethod(config_provider),
            "api_token": api_token,
        },
    )
    return ThreadingHTTPServer((host, port), handler)


def run_server(
    manager: EventCacheManager,
    config_provider: Callable[[], AppConfig],
    host: str = "127.0.0.1",
    port: int = 8780,
) -> None:
    server = make_server(manager, config_provider, host, port, api_token=os.environ.get("WALLCAL_API_TOKEN"))
    print(f"wallcal events API listening on http://{host}:{port}")
    try:
        server.serve_forever()
    finally:
        server.server_close()
