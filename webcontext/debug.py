"""Debug-mode reporting: routes, templates, warnings and errors."""

from __future__ import annotations

import dataclasses
import functools
import os
import platform
import sys
from collections.abc import Callable, Iterable, Sequence
from typing import Any, TextIO

_PREFIX = "[WEBCONTEXT-debug] "
_MIN_PYTHON_MINOR = 10


@dataclasses.dataclass
class _DebugState:
    debugging: bool
    writer: TextIO | None = None
    error_writer: TextIO | None = None
    print_func: Callable[..., Any] | None = None
    route_print_func: Callable[[str, str, str, int], Any] | None = None


_state = _DebugState(
    debugging=os.environ.get("WEBCONTEXT_MODE", "debug").lower() not in ("release", "test")
)


def _out() -> TextIO:
    return _state.writer if _state.writer is not None else sys.stdout


def _err() -> TextIO:
    return _state.error_writer if _state.error_writer is not None else sys.stderr


def is_debugging() -> bool:
    """Report whether debug mode is on."""
    return _state.debugging


def set_debugging(enabled: bool) -> None:
    """Turn debug mode on or off."""
    _state.debugging = bool(enabled)


def set_output(writer: TextIO | None = None, error_writer: TextIO | None = None) -> None:
    """Choose where debug output and debug errors go; None means the standard streams."""
    _state.writer = writer
    _state.error_writer = error_writer


def set_print_func(func: Callable[..., Any] | None) -> None:
    """Install a function called with (format, *args) instead of the default printer."""
    _state.print_func = func


def set_route_print_func(func: Callable[[str, str, str, int], Any] | None) -> None:
    """Install a function called with (method, path, handler name, handler count)."""
    _state.route_print_func = func


def name_of_function(func: Any) -> str:
    """Return the dotted module-qualified name of a callable."""
    if func is None:
        return ""
    while isinstance(func, functools.partial):
        func = func.func
    qualname = getattr(func, "__qualname__", None)
    module = getattr(func, "__module__", None)
    if qualname is None:
        cls = type(func)
        qualname, module = cls.__qualname__, cls.__module__
    return f"{module}.{qualname}" if module else qualname


def debug_print(format: str, *args: Any) -> None:
    """Print a %-style message when debug mode is on."""
    if not _state.debugging:
        return
    if _state.print_func is not None:
        _state.print_func(format, *args)
        return
    if not format.endswith("\n"):
        format += "\n"
    text = format % args if args else format
    _out().write(_PREFIX + text)


def debug_print_error(err: BaseException | None) -> None:
    """Print an error to the error stream when debug mode is on."""
    if err is not None and _state.debugging:
        _err().write(f"{_PREFIX}[ERROR] {err}\n")


def debug_print_route(http_method: str, absolute_path: str, handlers: Sequence[Any]) -> None:
    """Report a registered route and its final handler."""
    if not _state.debugging:
        return
    count = len(handlers)
    handler_name = name_of_function(handlers[-1] if handlers else None)
    if _state.route_print_func is None:
        debug_print(
            "%-6s %-25s --> %s (%d handlers)\n", http_method, absolute_path, handler_name, count
        )
    else:
        _state.route_print_func(http_method, absolute_path, handler_name, count)


def debug_print_load_template(names: Iterable[str]) -> None:
    """Report the names of loaded templates."""
    if not _state.debugging:
        return
    names = list(names)
    listing = "".join(f"\t- {name}\n" for name in names)
    debug_print("Loaded HTML Templates (%d): \n%s\n", len(names), listing)


def get_min_ver(v: str) -> int:
    """Return the minor number of a version string such as '3.12.1'."""
    first = v.find(".")
    last = v.rfind(".")
    part = v[first + 1:] if first == last else v[first + 1:last]
    if not part.isdigit():
        raise ValueError(f"invalid version: {v!r}")
    return int(part)


def debug_print_warning_default() -> None:
    """Warn about an unsupported interpreter and the default middleware."""
    try:
        minor = get_min_ver(platform.python_version())
    except ValueError:
        minor = None
    if minor is not None and minor < _MIN_PYTHON_MINOR:
        debug_print("[WARNING] Now webcontext requires Python 3.10+.\n\n")
    debug_print(
        "[WARNING] Creating an Engine instance with the Logger and Recovery "
        "middleware already attached.\n\n"
    )


def debug_print_warning_new() -> None:
    """Warn that debug mode is on."""
    debug_print(
        '[WARNING] Running in "debug" mode. Switch to "release" mode in production.\n'
        " - using env:\texport WEBCONTEXT_MODE=release\n"
        " - using code:\twebcontext.debug.set_debugging(False)\n\n"
    )


def debug_print_warning_set_html_template() -> None:
    """Warn that setting the HTML template is not thread-safe."""
    debug_print(
        "[WARNING] Since set_html_template() is NOT thread-safe. It should only be called\n"
        "at initialization. ie. before any route is registered or the router is listening "
        "in a socket:\n\n"
        "\trouter = Engine()\n"
        "\trouter.set_html_template(template)  # << good place\n\n"
    )