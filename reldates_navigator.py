#!/usr/bin/env python3
"""
reldates navigator

- Evaluate relative date expressions (+2d, -1mL, +1Mon 09:00, +1SDST ...) and absolute dates.
- Explain an expression: parsed groups, natural text, resolved date.
- Validate expressions for scripts (exit code 0/1).
- Self-check: config, timezone, DST transitions for the current year, base date.
- Interactive mode with fuzzy completion of common expressions.
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import datetime
from typing import List, Optional

from dateutil import parser as date_parser, tz

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

from prompt_toolkit import prompt
from prompt_toolkit.completion import FuzzyCompleter, WordCompleter

import reldates_core as core


# ──────────────────────────────────────────────────────────────────────────────
# Constants / styling
# ──────────────────────────────────────────────────────────────────────────────
console = Console()
SYSTEM_ZONE = tz.tzlocal()

COLORS = {
    'primary': 'bright_cyan',
    'secondary': 'bright_blue',
    'success': 'green',
    'warning': 'bright_yellow',
    'error': 'bright_red',
    'muted': 'grey58',
    'accent': 'bright_magenta',
}

EXAMPLES = [
    "today",
    "+60min",
    "-15min",
    "+1d",
    "-1d",
    "+2d",
    "+1d 17:00",
    "+1w",
    "-1Mon",
    "+0Fri",
    "+1w2",
    "+1m",
    "+1m15",
    "+0mL",
    "-1mL",
    "+1y",
    "-1y",
    "+0yL",
    "+0SDST",
    "+0EDST",
    "+1SDST",
    "+0EDST-1d 12:00",
]

DATETIME_FMT = "%a %Y-%m-%d %H:%M"


def _fmt(dt: datetime) -> str:
    return dt.strftime(DATETIME_FMT)


def _kind_of(expr: str) -> str:
    if core.is_relative_expression(expr):
        return core.parse_relative_expr(expr).kind.name.lower()
    if expr.lower() == core.TODAY:
        return "today"
    return "absolute"


def _evaluate(expr: str, base: Optional[datetime]) -> datetime:
    if base is not None:
        if core.is_relative_expression(expr):
            return core.parse_relative(expr, base)
        if expr.lower() == core.TODAY:
            return core.truncate_to_midnight(base)
    return core.parse_date(expr)


def _parse_base(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return core.parse_date(raw)
    except core.FormatError:
        pass
    try:
        return date_parser.parse(raw)
    except (ValueError, OverflowError) as e:
        raise core.FormatError(raw, f"Invalid --base '{raw}': {e}") from e


# ──────────────────────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────────────────────
def _emit_check(status: str, label: str, detail: str) -> None:
    color = {
        "OK": COLORS["success"],
        "WARN": COLORS["warning"],
        "FAIL": COLORS["error"],
    }.get(status, COLORS["muted"])
    console.print(f"[{color}]{status:>4}[/] {label}: {detail}")


def _evaluate_many(exprs: List[str], base: Optional[datetime]) -> int:
    table = Table(box=box.SIMPLE_HEAVY, header_style=f"bold {COLORS['primary']}")
    table.add_column("Expression")
    table.add_column("Kind", style=COLORS["muted"])
    table.add_column("Date")
    code = 0
    for expr in exprs:
        try:
            table.add_row(expr, _kind_of(expr), _fmt(_evaluate(expr, base)))
        except core.FormatError as e:
            code = 1
            table.add_row(expr, "—", f"[{COLORS['error']}]{e}[/]")
    title = f"Base {base:%Y-%m-%d}" if base else f"Today {core.today():%Y-%m-%d}"
    console.print(Panel(table, title=title, border_style=COLORS["secondary"], expand=False))
    return code


def _explain(expr: str, base: Optional[datetime]) -> int:
    try:
        result = _evaluate(expr, base)
    except core.FormatError as e:
        console.print(f"[{COLORS['error']}]Invalid expression:[/] {e}")
        return 1

    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_row("Expression", expr)
    if core.is_relative_expression(expr):
        parsed = core.parse_relative_expr(expr)
        table.add_row("Date part", parsed.kind.name.lower())
        table.add_row("Offset", f"{parsed.initial_offset:+d}")
        if parsed.secondary:
            table.add_row("Secondary", parsed.secondary)
        if parsed.inner_days is not None:
            table.add_row("Inner offset", f"{parsed.inner_days:+d}d")
        if parsed.time is not None:
            table.add_row("Time", f"{parsed.time[0]:02d}:{parsed.time[1]:02d}")
        table.add_row("Natural", core.describe_expression(expr))
    else:
        table.add_row("Date part", _kind_of(expr))
    table.add_row("Result", _fmt(result))
    console.print(Panel(table, title="Expression explain", border_style=COLORS["secondary"], expand=False))
    return 0


def _validate(expr: str) -> int:
    try:
        core.parse_date(expr)
        console.print(f"[{COLORS['success']}]OK[/] {expr}: valid")
        return 0
    except core.FormatError as e:
        console.print(f"[{COLORS['error']}]FAIL[/] {expr}: {e}")
        return 1


def _self_check() -> int:
    console.print("[bold]reldates self-check[/bold]")
    ok = True

    cfg_paths = core._config_paths()
    cfg_existing = [p for p in cfg_paths if os.path.exists(p)]
    if cfg_existing:
        cfg_path = cfg_existing[0]
        try:
            data = core._read_toml(cfg_path)
            if data:
                _emit_check("OK", "config", f"found {cfg_path}")
            else:
                _emit_check("WARN", "config", f"found {cfg_path} (empty or parse error)")
        except RuntimeError as e:
            ok = False
            _emit_check("FAIL", "config", str(e))
    else:
        _emit_check("WARN", "config", "no config file found; defaults in use")

    system_name = datetime.now(SYSTEM_ZONE).tzname() or "local"
    if core.LOCAL_TZ_NAME:
        _emit_check("OK", "timezone", f"{core.zone_label()} (configured; system {system_name})")
    else:
        _emit_check("OK", "timezone", f"{system_name} (system)")
    _emit_check("OK", "week start", core.WEEK_START)

    for expr, label in (("+0SDST", "DST start"), ("+0EDST", "DST end")):
        try:
            _emit_check("OK", label, _fmt(core.parse_relative(expr)))
        except core.FormatError as e:
            _emit_check("WARN", label, str(e))

    base = core.today()
    if base == core.truncate_to_midnight(base):
        _emit_check("OK", "base date", f"{base:%Y-%m-%d}")
    else:
        ok = False
        _emit_check("FAIL", "base date", f"not at midnight: {base}")

    return 0 if ok else 1


def _interactive(base: Optional[datetime]) -> int:
    completer = FuzzyCompleter(WordCompleter(EXAMPLES, match_middle=True))
    console.print(Panel(
        "Type an expression (e.g. -1mL, +1Mon 09:00, 2015-12-31).\n"
        "'reset' refreshes today, 'quit' exits.",
        title="reldates", border_style=COLORS['primary'],
    ))
    while True:
        try:
            raw = prompt("❯ ", completer=completer).strip()
        except (KeyboardInterrupt, EOFError):
            console.print(f"\n[{COLORS['warning']}]Bye[/]")
            return 0
        if not raw:
            continue
        if raw.lower() in ("quit", "exit", "q"):
            return 0
        if raw.lower() == "reset":
            core.reset_base_date()
            console.print(f"[{COLORS['success']}]Base date reset to {core.today():%Y-%m-%d}[/]")
            continue
        _explain(raw, base)


def main():
    parser = argparse.ArgumentParser(
        description="Evaluate relative date expressions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n  reldates +1d -1mL '+1d 17:00'\n  reldates --explain +1SDST\n",
    )
    parser.add_argument("exprs", nargs="*", metavar="EXPR", help="Expressions to evaluate")
    parser.add_argument("--base", metavar="DATE", help="Base date for relative expressions and 'today' (default: today); absolute dates ignore it")
    parser.add_argument("--explain", metavar="EXPR", help="Explain an expression")
    parser.add_argument("--validate", metavar="EXPR", help="Validate an expression")
    parser.add_argument("--self-check", action="store_true", help="Run self-check diagnostics")
    parser.add_argument("-i", "--interactive", action="store_true", help="Interactive prompt")
    args = parser.parse_args()

    try:
        base = _parse_base(args.base)
    except core.FormatError as e:
        console.print(f"[{COLORS['error']}]{e}[/]")
        sys.exit(2)

    code = 0
    ran = False
    if args.self_check:
        ran = True
        code = max(code, _self_check())
    if args.validate:
        ran = True
        code = max(code, _validate(args.validate))
    if args.explain:
        ran = True
        code = max(code, _explain(args.explain, base))
    if args.exprs:
        ran = True
        code = max(code, _evaluate_many(args.exprs, base))
    if args.interactive or not ran:
        code = max(code, _interactive(base))
    sys.exit(code)


if __name__ == "__main__":
    main()
