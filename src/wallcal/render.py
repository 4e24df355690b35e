from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Any, Dict, List, Optional, Sequence

from PIL import Image, ImageDraw, ImageFont

from .layout import DayLayout, Segment, build_multi_day_rows, layout_grid, to_date_key
from .models import DEFAULT_COLOR

WEEKDAYS = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")

PADDING = 24
HEADER_H = 64
WEEKDAY_H = 32
CELL_PAD = 6
DAY_NUMBER_GAP = 4
BAR_H = 24
BAR_GAP = 3
BARS_MARGIN = 4
CHIP_GAP = 3


def _load_font(size: int) -> ImageFont.FreeTypeFont:
    # DejaVu is commonly available on Raspberry Pi; install via apt
    try:
        return ImageFont.truetype("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf", size)
    except OSError:
        return ImageFont.load_default(size)


def _line_height(font: Any) -> int:
    left, top, right, bottom = font.getbbox("Ag")
    return int(bottom - top) + 2


def _fmt_time(dt: datetime) -> str:
    return dt.strftime("%-I:%M %p").lower()


def _event_color(e: Any) -> str:
    colors = getattr(e, "calendar_colors", None)
    if colors:
        return colors[0]
    return getattr(e, "calendar_color", "") or DEFAULT_COLOR


def _truncate(draw: ImageDraw.ImageDraw, text: str, font: Any, max_width: float) -> str:
    if draw.textlength(text, font=font) <= max_width:
        return text
    while text and draw.textlength(text + "…", font=font) > max_width:
        text = text[:-1]
    return text + "…" if text else ""


@dataclass(frozen=True)
class GridGeometry:
    left: int
    top: int
    cell_w: float
    cell_h: float
    day_number_h: int
    chip_h: int

    def cell_origin(self, week_index: int, day_index: int) -> tuple[float, float]:
        return self.left + day_index * self.cell_w, self.top + week_index * self.cell_h

    def bars_height(self, bar_rows: int) -> int:
        if bar_rows <= 0:
            return 0
        return bar_rows * BAR_H + (bar_rows - 1) * BAR_GAP + BARS_MARGIN

    def fitting_chips(self, bar_rows: int) -> int:
        available = self.cell_h - 2 * CELL_PAD - self.day_number_h - DAY_NUMBER_GAP - self.bars_height(bar_rows)
        if available <= 0:
            return 0
        used = 0.0
        count = 0
        while True:
            next_used = self.chip_h if count == 0 else used + CHIP_GAP + self.chip_h
            if next_used > available:
                return count
            used = next_used
            count += 1


def grid_geometry(canvas_w: int, canvas_h: int, week_count: int) -> GridGeometry:
    top = PADDING + HEADER_H + WEEKDAY_H
    rows = max(1, week_count)
    return GridGeometry(
        left=PADDING,
        top=top,
        cell_w=(canvas_w - 2 * PADDING) / 7,
        cell_h=(canvas_h - top - PADDING) / rows,
        day_number_h=_line_height(_load_font(22)),
        chip_h=_line_height(_load_font(18)) + 4,
    )


def measure_day_capacities(
    canvas_w: int,
    canvas_h: int,
    weeks: Sequence[Sequence[Optional[date]]],
    events: Sequence[Any],
    tz: tzinfo,
) -> Dict[str, int]:
    """Pixel-measured chip capacity per date key for the given canvas."""
    geo = grid_geometry(canvas_w, canvas_h, len(weeks))
    capacities: Dict[str, int] = {}
    for week in weeks:
        fit = geo.fitting_chips(len(build_multi_day_rows(week, events, tz)))
        for day in week:
            if day is not None:
                capacities[to_date_key(day)] = fit
    return capacities


def _draw_bar(
    d: ImageDraw.ImageDraw,
    geo: GridGeometry,
    week_index: int,
    row_index: int,
    segment: Segment,
    font: Any,
) -> None:
    x0, y0 = geo.cell_origin(week_index, segment.start_index)
    x1, _ = geo.cell_origin(week_index, segment.end_index + 1)
    y = y0 + CELL_PAD + geo.day_number_h + DAY_NUMBER_GAP + row_index * (BAR_H + BAR_GAP)
    left = x0 + (0 if segment.starts_before else CELL_PAD)
    right = x1 - (0 if segment.ends_after else CELL_PAD)
    d.rectangle((left, y, right, y + BAR_H), fill=_event_color(segment.event))
    label = ("◂ " if segment.starts_before else "") + segment.event.summary
    d.text((left + 6, y + 2), _truncate(d, label, font, right - left - 12), fill="white", font=font)


def _draw_day(
    d: ImageDraw.ImageDraw,
    geo: GridGeometry,
    week_index: int,
    day_index: int,
    day: DayLayout,
    bar_rows: int,
    fonts: Dict[str, Any],
) -> None:
    x, y = geo.cell_origin(week_index, day_index)
    d.rectangle((x, y, x + geo.cell_w, y + geo.cell_h), outline="black", width=1)
    if day.date is None:
        return
    d.text((x + CELL_PAD, y + CELL_PAD), str(day.date.day), fill="black", font=fonts["day"])

    chip_y = y + CELL_PAD + geo.day_number_h + DAY_NUMBER_GAP + geo.bars_height(bar_rows)
    text_w = geo.cell_w - 2 * CELL_PAD - 12
    for e in day.visible:
        d.rectangle((x + CELL_PAD, chip_y + 3, x + CELL_PAD + 6, chip_y + geo.chip_h - 3), fill=_event_color(e))
        label = e.summary if e.all_day else f"{_fmt_time(e.start)} {e.summary}"
        d.text((x + CELL_PAD + 12, chip_y), _truncate(d, label, fonts["chip"], text_w), fill="black", font=fonts["chip"])
        chip_y += geo.chip_h + CHIP_GAP

    if day.hidden_count:
        d.text((x + CELL_PAD + 12, chip_y), f"+{day.hidden_count} more", fill="black", font=fonts["more"])


def render_grid(
    canvas_w: int,
    canvas_h: int,
    title: str,
    weeks: Sequence[Sequence[Optional[date]]],
    events: Sequence[Any],
    tz: tzinfo,
    narrow_portrait: bool = False,
    capacities: Optional[Dict[str, int]] = None,
) -> Image.Image:
    img = Image.new("RGB", (canvas_w, canvas_h), "white")
    d = ImageDraw.Draw(img)
    fonts = {
        "header": _load_font(44),
        "weekday": _load_font(20),
        "day": _load_font(22),
        "chip": _load_font(18),
        "more": _load_font(16),
        "bar": _load_font(16),
    }

    header_w = d.textlength(title, font=fonts["header"])
    d.text(((canvas_w - header_w) / 2, PADDING), title, fill="black", font=fonts["header"])

    geo = grid_geometry(canvas_w, canvas_h, len(weeks))
    for i, name in enumerate(WEEKDAYS):
        x, _ = geo.cell_origin(0, i)
        d.text((x + CELL_PAD, geo.top - WEEKDAY_H + 4), name, fill="black", font=fonts["weekday"])

    if capacities is None:
        capacities = measure_day_capacities(canvas_w, canvas_h, weeks, events, tz)
    layouts = layout_grid(weeks, events, tz, narrow_portrait=narrow_portrait, capacities=capacities)

    for week_index, week in enumerate(layouts):
        for day_index, day in enumerate(week.days):
            _draw_day(d, geo, week_index, day_index, day, len(week.rows), fonts)
        for row_index, row in enumerate(week.rows):
            for segment in row:
                _draw_bar(d, geo, week_index, row_index, segment, fonts["bar"])

    return img


def grid_title(view: str, weeks: List[List[Optional[date]]]) -> str:
    dates = [d for week in weeks for d in week if d is not None]
    if not dates:
        return ""
    if view == "month":
        return dates[0].strftime("%B %Y")
    return f"{dates[0].strftime('%b %-d')} – {dates[-1].strftime('%b %-d, %Y')}"
