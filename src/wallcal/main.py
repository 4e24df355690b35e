from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import date, datetime
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from .aggregate import google_token_path
from .cache import EventCacheManager
from .calendar_google import authorize
from .config import AppConfig, load_config
from .errors import CalendarSyncError
from .layout import weeks_for_view
from .render import grid_title, render_grid
from .server import run_server
from .store import JsonEventStore
from .sync_job import CalendarSyncJob

CONFIG_PATH_DEFAULT = "/opt/wallcal/config.yaml"


def build_manager(config_path: str) -> tuple[EventCacheManager, Callable[[], AppConfig]]:
    # Config is re-read on every sync/extension decision.
    def config_provider() -> AppConfig:
        return load_config(config_path)

    cfg = config_provider()
    return EventCacheManager(config_provider, JsonEventStore(cfg.event_cache_path)), config_provider


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2))


def _render(manager: EventCacheManager, cfg: AppConfig, args: argparse.Namespace) -> None:
    tz = ZoneInfo(cfg.timezone)
    anchor = date.fromisoformat(args.date) if args.date else datetime.now(tz).date()
    weeks = weeks_for_view(args.view, anchor)
    img = render_grid(
        canvas_w=cfg.display.width,
        canvas_h=cfg.display.height,
        title=grid_title(args.view, weeks),
        weeks=weeks,
        events=manager.merged_events(),
        tz=tz,
        narrow_portrait=args.portrait or cfg.display.narrow_portrait,
    )
    img.save(args.out)
    print(f"Wrote {args.view} grid for {anchor.isoformat()} to {args.out}")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Household wall calendar: event sync, cache and grid layout")
    ap.add_argument("--config", default=os.environ.get("WALLCAL_CONFIG", CONFIG_PATH_DEFAULT))
    ap.add_argument("--log-level", default=os.environ.get("WALLCAL_LOG_LEVEL", "INFO"))
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("sync")

    extend = sub.add_parser("extend")
    extend.add_argument("--time-min")
    extend.add_argument("--time-max")
    extend.add_argument("--view", choices=["month", "fourWeek", "week"])

    serve = sub.add_parser("serve")
    serve.add_argument("--host", default=os.environ.get("WALLCAL_API_HOST", "127.0.0.1"))
    serve.add_argument("--port", type=int, default=int(os.environ.get("WALLCAL_API_PORT", "8780")))

    render = sub.add_parser("render")
    render.add_argument("--view", choices=["month", "fourWeek", "week"], default="month")
    render.add_argument("--date", help="YYYY-MM-DD inside the grid to render")
    render.add_argument("--portrait", action="store_true")
    render.add_argument("--out", default="calendar.png")

    auth = sub.add_parser("authorize")
    auth.add_argument("--credentials", default=os.environ.get("GOOGLE_CREDENTIALS_JSON", ""))

    args = ap.parse_args(argv)

    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    manager, config_provider = build_manager(args.config)
    cfg = config_provider()

    try:
        if args.command == "sync":
            _print(manager.sync().to_dict())
            return 0

        if args.command == "extend":
            _print(manager.extend(time_min=args.time_min, time_max=args.time_max, view=args.view).to_dict())
            return 0

        if args.command == "render":
            _render(manager, cfg, args)
            return 0

        if args.command == "authorize":
            if not args.credentials:
                print("GOOGLE_CREDENTIALS_JSON not set; pass --credentials", file=sys.stderr)
                return 2
            authorize(args.credentials, google_token_path(cfg))
            _print({"ok": True, "token": google_token_path(cfg)})
            return 0

        if args.command == "serve":
            job = CalendarSyncJob(manager, config_provider)
            job.start()
            try:
                run_server(manager, config_provider, host=args.host, port=args.port)
            finally:
                job.stop(timeout=5)
            return 0
    except CalendarSyncError as exc:
        _print(exc.to_dict())
        return 1

    return 2


if __name__ == "__main__":
    sys.exit(main())
