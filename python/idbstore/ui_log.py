"""
ui_log.py - shared logging sink for browser and non-browser runs.

The engines and the orchestrator emit structured log entries through this
module instead of printing. An application can register custom entry/clear
sinks; without one, entries at or above the current level go to the PyScript
``#output`` element when there is one, else to stdout.
"""

from __future__ import annotations

import datetime
import html
from typing import Any, Callable, Dict, Iterable, Optional

# Optional browser document bridge for PyScript pages.
try:
    from pyscript import document
except ImportError:  # pragma: no cover - non-browser usage
    document = None


LogEntry = Dict[str, Any]
EntrySink = Callable[[LogEntry], None]
ClearSink = Callable[[], None]

# css classes double as levels, lowest first
LEVELS = ("debug", "info", "success", "warn", "fail")
_entry_sink: Optional[EntrySink] = None
_clear_sink: Optional[ClearSink] = None
_level: str = "warn"


def _now() -> str:
    return datetime.datetime.now().strftime("%H:%M:%S.%f")[:-3]


def _normalize_css(css_class: str) -> str:
    return css_class if css_class in LEVELS else "info"


def _normalize_entry(entry: LogEntry) -> LogEntry:
    return {
        "time": str(entry.get("time") or _now()),
        "css": _normalize_css(str(entry.get("css") or "info")),
        "msg": str(entry.get("msg") or ""),
        "run_id": entry.get("run_id"),
    }


def set_sinks(
    entry_sink: Optional[EntrySink] = None, clear_sink: Optional[ClearSink] = None
) -> None:
    """Register sinks for app-level state-driven rendering."""
    global _entry_sink, _clear_sink
    _entry_sink = entry_sink
    _clear_sink = clear_sink


def clear_sinks() -> None:
    """Remove registered sinks and fall back to default behavior."""
    global _entry_sink, _clear_sink
    _entry_sink = None
    _clear_sink = None


def set_level(level: str) -> None:
    """Set the lowest level written by the default sink."""
    global _level
    if level not in LEVELS:
        raise ValueError(f"Unknown log level {level!r}, expected one of {LEVELS}")
    _level = level


def get_level() -> str:
    return _level


def enabled(css_class: str) -> bool:
    return LEVELS.index(_normalize_css(css_class)) >= LEVELS.index(_level)


def emit(
    msg: Any,
    css_class: str = "info",
    *,
    time: Optional[str] = None,
    run_id: Optional[str] = None,
) -> None:
    entry = _normalize_entry(
        {"time": time, "css": css_class, "msg": msg, "run_id": run_id}
    )
    if _entry_sink is not None:
        _entry_sink(entry)
        return
    _default_emit(entry)


def debug(msg: Any, **kwa) -> None:
    emit(msg, "debug", **kwa)


def info(msg: Any, **kwa) -> None:
    emit(msg, "info", **kwa)


def warn(msg: Any, **kwa) -> None:
    emit(msg, "warn", **kwa)


def fail(msg: Any, **kwa) -> None:
    emit(msg, "fail", **kwa)


def emit_batch(entries: Iterable[LogEntry]) -> None:
    for entry in entries:
        normalized = _normalize_entry(entry)
        if _entry_sink is not None:
            _entry_sink(normalized)
        else:
            _default_emit(normalized)


def clear() -> None:
    if _clear_sink is not None:
        _clear_sink()
        return
    _default_clear()


def _default_emit(entry: LogEntry) -> None:
    """Fallback for pages and processes without a registered sink."""
    if not enabled(entry["css"]):
        return
    msg = entry["msg"]
    if document is None:
        print(f"[{entry['time']}] {entry['css'].upper()}: {msg}")
        return

    output = document.querySelector("#output")
    if output is None:
        print(msg)
        return

    line = html.escape(f"[{entry['time']}] {msg}")
    css = entry["css"]
    output.innerHTML += f'<span class="{css}">{line}</span>\n'
    output.scrollTop = output.scrollHeight


def _default_clear() -> None:
    if document is None:
        return
    output = document.querySelector("#output")
    if output is not None:
        output.innerHTML = ""
