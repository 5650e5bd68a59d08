#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared core for reldates: dates relative to a run-scoped "today".

Offset syntax:

    <offset><datepart>[<inner offset>][<day>|L][ HH:MM]

  +60min        now + 60 minutes
  +2d           today + 2
  -1y           today a year back
  -1Mon         Monday of the previous week
  +1m15         the 15th of next month
  -1mL          last day of last month
  +1d 17:00     tomorrow at 17:00
  +1SDST        DST start date of next year
  +0EDST-1d     the day before this year's DST end

Absolute dates (20151231, 2015-12-31, 12/31/2015, 2015-12-31 17:00) and the
literal 'today' are accepted by parse_date() as well.
"""
from __future__ import annotations
import os, re, sys
import json, time
import calendar
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, date
from enum import Enum
from functools import lru_cache, wraps

from zoneinfo import ZoneInfo

from dateutil import tz as dateutil_tz


# ==============================================================================
# TABLE OF CONTENTS (major sections)
# 1) Config & defaults
# 2) Diagnostics
# 3) Errors
# 4) Time & timezone helpers
# 5) Calendar primitives
# 6) Expression grammar
# 7) Date-part resolvers (incl. DST)
# 8) Base date & public API
# ==============================================================================


# ==============================================================================
# SECTION: Config & defaults
# ==============================================================================
try:
    import tomllib  # Python 3.11+
except Exception:
    try:
        import tomli as tomllib  # Python 3.10 and earlier (pip install tomli)
    except Exception:
        tomllib = None


_DEFAULTS = {
    "tz": "",              # empty = system local zone
    "week_start": "sun",   # 'sun' or 'mon'; decides which week a weekday snaps into
}

_CONF_CACHE = None
_WARNED: set[str] = set()


def _warn_once(key: str, message: str) -> None:
    if key in _WARNED:
        return
    _WARNED.add(key)
    try:
        print(message, file=sys.stderr)
    except Exception:
        pass


def _read_toml(path: str) -> dict:
    # Fast path: missing file => no config here
    try:
        if not path or not os.path.exists(path):
            return {}
    except Exception:
        return {}

    env_path = os.environ.get("RELDATES_CONFIG") or ""
    env_abs = os.path.abspath(os.path.expanduser(env_path)) if env_path else ""
    is_env_path = bool(env_abs and path == env_abs)

    if tomllib is None:
        if is_env_path:
            raise RuntimeError(
                f"RELDATES_CONFIG is set but TOML parser is unavailable for {path}. "
                "Install tomli or upgrade to Python 3.11+."
            )
        _warn_once(
            "toml_missing",
            f"[reldates] Config found but no TOML parser available; ignoring {path}\n"
            "          Fix: pip install tomli (or use Python 3.11+).",
        )
        return {}

    try:
        with open(path, "rb") as f:
            return tomllib.load(f) or {}
    except Exception as e:
        if is_env_path:
            raise RuntimeError(f"RELDATES_CONFIG parse failed for {path}: {e}")
        _warn_once(
            f"toml_parse:{path}",
            f"[reldates] Failed to parse TOML; defaults will be used.\n"
            f"          Path: {path}\n"
            f"          Error: {e}",
        )
        return {}


def _config_paths() -> list[str]:
    env_path = os.environ.get("RELDATES_CONFIG")
    if env_path:
        ap = os.path.abspath(os.path.expanduser(env_path))
        if (not os.path.exists(ap)) or os.path.isdir(ap):
            _warn_once(
                "env_config_missing",
                "[reldates] RELDATES_CONFIG is set but the file is missing or invalid; defaults will be used.\n"
                f"          RELDATES_CONFIG={env_path}\n"
                f"          Resolved path: {ap}",
            )
        return [ap]

    xdg = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    moddir = os.path.dirname(os.path.abspath(__file__))
    candidates = [
        os.path.join(xdg, "reldates", "reldates.toml"),
        os.path.join(moddir, "reldates.toml"),
    ]
    seen = set()
    out = []
    for p in candidates:
        ap = os.path.abspath(os.path.expanduser(p))
        if ap in seen:
            continue
        seen.add(ap)
        out.append(ap)
    return out


def _normalize_keys(d: dict) -> dict:
    # allow users to write keys in any case
    out = {}
    for k, v in (d or {}).items():
        kk = str(k).strip().lower()
        out[kk] = v
    return out


def _load_config() -> dict:
    cfg = dict(_DEFAULTS)
    chosen = None

    paths = _config_paths()
    for p in paths:
        data = _read_toml(p)
        if data:
            cfg.update(_normalize_keys(data))
            chosen = p
            break

    if chosen:
        diag(f"Using config: {chosen}")
    else:
        diag("No config file found; using defaults. Search order: " + ", ".join(paths))

    # normalize values
    cfg["tz"] = str(cfg.get("tz") or "").strip()
    ws = str(cfg.get("week_start") or _DEFAULTS["week_start"]).strip().lower()[:3]
    cfg["week_start"] = ws if ws in ("sun", "mon") else _DEFAULTS["week_start"]
    return cfg


def _get_config() -> dict:
    global _CONF_CACHE
    if _CONF_CACHE is None:
        _CONF_CACHE = _load_config()
    return _CONF_CACHE


def _conf_raw(key: str):
    return _get_config().get(key)


def _conf_str(key: str, default: str) -> str:
    v = _conf_raw(key)
    if v is None:
        return str(default)
    s = str(v).strip()
    return s if s else str(default)


def _conf_int(
    key: str,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    v = _conf_raw(key)
    try:
        out = int(str(v).strip())
    except Exception:
        out = int(default)
    if min_value is not None and out < min_value:
        out = int(min_value)
    if max_value is not None and out > max_value:
        out = int(max_value)
    return out


# ==============================================================================
# SECTION: Diagnostics
# ==============================================================================
def _diag_log_path() -> str:
    p = os.environ.get("RELDATES_DIAG_LOG_PATH")
    if p:
        return os.path.abspath(os.path.expanduser(p))
    base = os.environ.get("XDG_CACHE_HOME") or os.path.expanduser("~/.cache")
    return os.path.join(base, "reldates", "diag.jsonl")


def diag_log(msg) -> None:
    """Append a JSONL diagnostic log entry (when RELDATES_DIAG_LOG=1)."""
    if os.environ.get("RELDATES_DIAG_LOG") != "1":
        return
    path = _diag_log_path()
    try:
        max_bytes = int(os.environ.get("RELDATES_DIAG_LOG_MAX_BYTES") or 262144)
    except ValueError:
        max_bytes = 262144
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if max_bytes > 0 and os.path.exists(path) and os.stat(path).st_size > max_bytes:
            overflow = path.replace(".jsonl", f".overflow.{int(time.time())}.jsonl")
            os.replace(path, overflow)
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "pid": os.getpid(),
            "thread": threading.current_thread().name,
        }
        if isinstance(msg, dict):
            payload["msg"] = str(msg.get("msg") or "")
            payload["data"] = msg
        else:
            payload["msg"] = str(msg)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str) + "\n")
    except OSError:
        # diagnostics must never break date resolution
        pass


def diag(msg) -> None:
    """Write diagnostics to stderr when RELDATES_DIAG=1 and to the diag log when RELDATES_DIAG_LOG=1."""
    if os.environ.get("RELDATES_DIAG") == "1":
        try:
            sys.stderr.write(f"[reldates] {msg}\n")
        except Exception:
            pass
    diag_log(msg)


_CONF = _get_config()

LOCAL_TZ_NAME = (os.environ.get("RELDATES_TZ") or "").strip() or _conf_str("tz", "")
WEEK_START = _CONF["week_start"]
MAX_EXPR_LEN = _conf_int("max_expr_len", 256, min_value=16, max_value=4096)
_CACHE_TTL_SECS = _conf_int("cache_ttl_secs", 3600, min_value=0)


def _ttl_lru_cache(maxsize: int = 128, ttl: float | None = None):
    ttl_val = _CACHE_TTL_SECS if ttl is None else ttl
    def _decorator(fn):
        cached = lru_cache(maxsize=maxsize)(fn)
        last = {"t": time.time()}
        @wraps(fn)
        def _wrapper(*args, **kwargs):
            if ttl_val and (time.time() - last["t"] > ttl_val):
                cached.cache_clear()
                last["t"] = time.time()
            return cached(*args, **kwargs)
        _wrapper.cache_clear = cached.cache_clear
        _wrapper.cache_info = cached.cache_info
        return _wrapper
    return _decorator


# ==============================================================================
# SECTION: Errors
# ==============================================================================
class FormatError(Exception):
    """A date string matched no known format, or could not be resolved to a date."""

    def __init__(self, value, message: str | None = None):
        self.value = value
        super().__init__(message or f"The string '{value}' could not be parsed to a date.")


# ==============================================================================
# SECTION: Time & timezone helpers
# ==============================================================================
@lru_cache(maxsize=32)
def _zone_for_name(name: str):
    if name:
        try:
            return ZoneInfo(name)
        except Exception as e:
            _warn_once(
                f"bad_tz:{name}",
                f"[reldates] Unknown timezone '{name}' ({e}); falling back to the system zone.",
            )
    return dateutil_tz.tzlocal()


def local_zone():
    """Zone for 'now' and DST lookups: configured tz, else the system zone."""
    return _zone_for_name(LOCAL_TZ_NAME)


def zone_label(zone=None) -> str:
    zone = zone or local_zone()
    key = getattr(zone, "key", None)
    if key:
        return key
    return datetime.now(zone).tzname() or "local"


def now_local() -> datetime:
    """Current wall-clock time in the local zone, as a naive datetime."""
    return datetime.now(local_zone()).replace(tzinfo=None)


def _as_local_datetime(value) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(local_zone()).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    raise TypeError(f"Expected a date or datetime, got {type(value).__name__}")


# ==============================================================================
# SECTION: Calendar primitives
# ==============================================================================
APPLY_ON_FIRST_DAY = "FIRST"
APPLY_ON_LAST_DAY = "LAST"

_DIGITS_RE = re.compile(r"[0-9]+")


def month_len(y: int, m: int) -> int:
    """Get number of days in month."""
    return calendar.monthrange(y, m)[1]


def truncate_to_midnight(dt: datetime) -> datetime:
    """Drop hours, minutes, seconds and microseconds."""
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def truncated_copy(dt, tz=None) -> datetime:
    """
    Midnight of the day `dt` falls on. With `tz`, the day is taken in that
    zone (naive inputs are read as local wall time). Returns a naive datetime.
    """
    dt = dt if isinstance(dt, datetime) else _as_local_datetime(dt)
    if tz is not None:
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=local_zone())
        dt = dt.astimezone(tz).replace(tzinfo=None)
    elif dt.tzinfo is not None:
        dt = _as_local_datetime(dt)
    return truncate_to_midnight(dt)


def month_end_date(dt: datetime) -> datetime:
    """Last day of dt's month; time of day is kept."""
    return dt.replace(day=month_len(dt.year, dt.month))


def _field_bounds(dt: datetime, field: str) -> tuple[int, int]:
    if field == "month":
        return 1, 12
    if field == "day":
        return 1, month_len(dt.year, dt.month)
    if field == "day_of_year":
        return 1, 366 if calendar.isleap(dt.year) else 365
    if field == "hour":
        return 0, 23
    if field in ("minute", "second"):
        return 0, 59
    raise ValueError(f"Unknown calendar field '{field}'")


def _set_field(dt: datetime, field: str, value: int) -> datetime:
    if field == "month":
        # clamp so that e.g. Jan 31 -> February lands on the 28th/29th
        return dt.replace(month=value, day=min(dt.day, month_len(dt.year, value)))
    if field == "day_of_year":
        return dt.replace(month=1, day=1) + timedelta(days=value - 1)
    return dt.replace(**{field: value})


def set_to_field_minimum(dt: datetime, field: str) -> datetime:
    return _set_field(dt, field, _field_bounds(dt, field)[0])


def set_to_field_maximum(dt: datetime, field: str) -> datetime:
    return _set_field(dt, field, _field_bounds(dt, field)[1])


def build_date_time(year: int, month: int, day: int, hour: int, minute: int) -> datetime:
    """
    Date with the fields year, month (1-12), day, hour and minute set.
    Hour/minute overflow rolls into the next day ('25:00' -> 01:00 tomorrow).
    """
    try:
        return datetime(year, month, day) + timedelta(hours=hour, minutes=minute)
    except (ValueError, OverflowError) as e:
        raise FormatError(
            f"{year:04d}-{month:02d}-{day:02d} {hour:02d}:{minute:02d}",
            f"Invalid date/time components: {e}",
        ) from e


def add_months(dt: datetime, months: int) -> datetime:
    """Add months to date, handling month-end correctly."""
    y = dt.year + (dt.month - 1 + months) // 12
    m = (dt.month - 1 + months) % 12 + 1
    return dt.replace(year=y, month=m, day=min(dt.day, month_len(y, m)))


def add_years(dt: datetime, years: int) -> datetime:
    return add_months(dt, 12 * years)


def _apply_on_token(apply_on):
    s = str(apply_on or "").strip().upper()
    if s in ("F", APPLY_ON_FIRST_DAY):
        return APPLY_ON_FIRST_DAY
    if s in ("L", APPLY_ON_LAST_DAY):
        return APPLY_ON_LAST_DAY
    if _DIGITS_RE.fullmatch(s):
        return int(s)
    raise FormatError(apply_on, f"Invalid day selector '{apply_on}'. Expected F, L or a day number.")


def unit_year(apply_on, previous: bool, dt: datetime) -> datetime:
    """
    The given day of dt's year, at midnight.
      unit_year("10", False, 2002-10-10) -> 2002-01-10
      unit_year("F", False, 2002-10-10)  -> 2002-01-01
      unit_year("L", True, 2002-10-10)   -> 2001-12-31
    """
    which = _apply_on_token(apply_on)
    d = truncate_to_midnight(dt)
    if which == APPLY_ON_LAST_DAY:
        d = set_to_field_maximum(set_to_field_maximum(d, "month"), "day")
    else:
        d = set_to_field_minimum(set_to_field_minimum(d, "month"), "day")
        if which != APPLY_ON_FIRST_DAY:
            d += timedelta(days=which - 1)
    if previous:
        d = add_years(d, -1)
    return d


def unit_quarter(apply_on, previous: bool, dt: datetime) -> datetime:
    """
    The given day of dt's quarter, at midnight.
      unit_quarter("20", False, 2002-10-10) -> 2002-10-20
      unit_quarter("F", False, 2002-11-10)  -> 2002-10-01
    """
    which = _apply_on_token(apply_on)
    d = truncate_to_midnight(dt)
    if previous:
        d = add_months(d, -3)
    q_first = (d.month - 1) // 3 * 3 + 1
    if which == APPLY_ON_LAST_DAY:
        return set_to_field_maximum(d.replace(day=1, month=q_first + 2), "day")
    d = d.replace(day=1, month=q_first)
    if which != APPLY_ON_FIRST_DAY:
        d += timedelta(days=which - 1)
    return d


def unit_month(apply_on, previous: bool, dt: datetime) -> datetime:
    """
    The given day of dt's month, at midnight.
      unit_month("20", False, 2002-08-10) -> 2002-08-20
      unit_month("F", True, 2002-08-10)   -> 2002-07-01
    """
    which = _apply_on_token(apply_on)
    d = truncate_to_midnight(dt)
    if previous:
        d = add_months(d, -1)
    if which == APPLY_ON_LAST_DAY:
        return set_to_field_maximum(d, "day")
    d = set_to_field_minimum(d, "day")
    if which != APPLY_ON_FIRST_DAY:
        d += timedelta(days=which - 1)
    return d


def unit_day(apply_on, previous: bool, dt: datetime) -> datetime:
    """The day itself at midnight (apply_on has no effect), or the day before."""
    d = truncate_to_midnight(dt)
    if previous:
        d -= timedelta(days=1)
    return d


def last_day_of_year(dt: datetime) -> datetime:
    return unit_year(APPLY_ON_LAST_DAY, False, dt)


# ==============================================================================
# SECTION: Expression grammar
# ==============================================================================
class DatePart(Enum):
    MINUTE = "min"
    DAY = "d"
    WEEK = "w"
    MONTH = "m"
    YEAR = "y"
    WEEKDAY_NAME = "wd"
    DST_START = "SDST"
    DST_END = "EDST"


TODAY = "today"

# Sun=1 .. Sat=7
_WEEKDAY_NUMBERS = {"Sun": 1, "Mon": 2, "Tue": 3, "Wed": 4, "Thu": 5, "Fri": 6, "Sat": 7}
_WEEKDAY_FULL = {
    1: "Sunday",
    2: "Monday",
    3: "Tuesday",
    4: "Wednesday",
    5: "Thursday",
    6: "Friday",
    7: "Saturday",
}

_TOKEN_KINDS = {
    "min": DatePart.MINUTE,
    "d": DatePart.DAY,
    "w": DatePart.WEEK,
    "m": DatePart.MONTH,
    "y": DatePart.YEAR,
    "SDST": DatePart.DST_START,
    "EDST": DatePart.DST_END,
}

# groups: offset, datepart, inner offset, day-of-unit or L, HH:MM
_rel_date_re = re.compile(
    r"([+-]\d+)"
    r"(min|d|w|m|y|Sun|Mon|Tue|Wed|Thu|Fri|Sat|SDST|EDST)"
    r"([+-]\d+d)?"
    r"(\d{0,2}|L?)"
    r"(?:\s(\d{1,2}:\d{2}))?",
    re.ASCII,
)
_weekday_digit_re = re.compile(r"[1-7]")


@dataclass(frozen=True)
class RelativeExpression:
    text: str
    initial_offset: int
    kind: DatePart
    secondary: str = ""
    inner_days: int | None = None
    time: tuple[int, int] | None = None


def _match_relative(text):
    if not isinstance(text, str) or len(text) > MAX_EXPR_LEN:
        return None
    return _rel_date_re.fullmatch(text)


def is_relative_expression(text) -> bool:
    """True when `text` is a complete relative date expression. Never raises."""
    return _match_relative(text) is not None


def _to_int(raw: str, text: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise FormatError(text, f"Invalid number '{raw}' in '{text}'") from e


@_ttl_lru_cache(maxsize=512)
def _parse_relative_expr_cached(text: str) -> RelativeExpression:
    m = _match_relative(text)
    if not m:
        raise FormatError(text)
    offset, token, inner, secondary, hhmm = m.groups()

    if token in _WEEKDAY_NUMBERS:
        kind = DatePart.WEEKDAY_NAME
        secondary = str(_WEEKDAY_NUMBERS[token])
    else:
        kind = _TOKEN_KINDS.get(token)
        if kind is None:
            raise FormatError(text)
        if kind in (DatePart.DST_START, DatePart.DST_END):
            secondary = token

    inner_days = _to_int(inner[:-1], text) if inner else None
    time_of_day = None
    if hhmm:
        hh, mm = hhmm.split(":")
        time_of_day = (_to_int(hh, text), _to_int(mm, text))

    return RelativeExpression(
        text=text,
        initial_offset=_to_int(offset, text),
        kind=kind,
        secondary=secondary or "",
        inner_days=inner_days,
        time=time_of_day,
    )


def parse_relative_expr(text: str) -> RelativeExpression:
    """Split a relative expression into its offset groups. Raises FormatError."""
    if not isinstance(text, str):
        raise FormatError(text)
    return _parse_relative_expr_cached(text)


# ==============================================================================
# SECTION: Date-part resolvers
# ==============================================================================
def _apply_time(d: datetime, hhmm) -> datetime:
    if hhmm is None:
        return d
    return build_date_time(d.year, d.month, d.day, hhmm[0], hhmm[1])


def _snap_to_weekday(d: datetime, number: int) -> datetime:
    """Move d to weekday `number` (Sun=1 .. Sat=7) inside d's own week."""
    start = 0 if WEEK_START == "mon" else 6   # datetime.weekday() of the week's first day
    week_first = d - timedelta(days=(d.weekday() - start) % 7)
    target = (number + 5) % 7
    return week_first + timedelta(days=(target - start) % 7)


def _resolve_minute(base: datetime, expr: RelativeExpression) -> datetime:
    return base + timedelta(minutes=expr.initial_offset)


def _resolve_day(base: datetime, expr: RelativeExpression) -> datetime:
    return _apply_time(base + timedelta(days=expr.initial_offset), expr.time)


def _resolve_week(base: datetime, expr: RelativeExpression) -> datetime:
    d = base + timedelta(weeks=expr.initial_offset)
    if _weekday_digit_re.fullmatch(expr.secondary):
        d = _snap_to_weekday(d, int(expr.secondary))
    return _apply_time(d, expr.time)


def _resolve_month(base: datetime, expr: RelativeExpression) -> datetime:
    d = add_months(base, expr.initial_offset)
    if expr.secondary.upper() == "L":
        d = month_end_date(d)
    elif _DIGITS_RE.fullmatch(expr.secondary):
        d = unit_month(expr.secondary, False, d)
    return _apply_time(d, expr.time)


def _resolve_year(base: datetime, expr: RelativeExpression) -> datetime:
    d = add_years(base, expr.initial_offset)
    if expr.secondary.upper() == "L":
        d = last_day_of_year(d)
    elif _DIGITS_RE.fullmatch(expr.secondary):
        d = unit_year(expr.secondary, False, d)
    return _apply_time(d, expr.time)


# --- DST transitions ---
_DST_SCAN_STEP = 86400


def _offset_at(zone, ts: int) -> timedelta:
    return datetime.fromtimestamp(ts, zone).utcoffset()


def _zone_ts(zone, dt: datetime) -> int:
    return int(dt.replace(tzinfo=zone).timestamp())


def _bisect_transition(zone, lo: int, hi: int, before: timedelta) -> int:
    # offset(lo) == before, offset(hi) != before
    while hi - lo > 1:
        mid = (lo + hi) // 2
        if _offset_at(zone, mid) == before:
            lo = mid
        else:
            hi = mid
    return hi


def next_transition(zone, start_ts: int, end_ts: int) -> int | None:
    """First epoch second in (start_ts, end_ts] whose UTC offset differs from start_ts's."""
    before = _offset_at(zone, start_ts)
    lo = start_ts
    while lo < end_ts:
        hi = min(lo + _DST_SCAN_STEP, end_ts)
        if _offset_at(zone, hi) != before:
            return _bisect_transition(zone, lo, hi, before)
        lo = hi
    return None


def previous_transition(zone, start_ts: int, end_ts: int) -> int | None:
    """Last epoch second in (start_ts, end_ts] at which the zone's UTC offset changed."""
    after = _offset_at(zone, end_ts)
    hi = end_ts
    while hi > start_ts:
        lo = max(hi - _DST_SCAN_STEP, start_ts)
        before = _offset_at(zone, lo)
        if before != after:
            return _bisect_transition(zone, lo, hi, before)
        hi = lo
    return None


def _resolve_dst(base: datetime, expr: RelativeExpression) -> datetime:
    zone = local_zone()
    year = add_years(base, expr.initial_offset).year
    jan1 = _zone_ts(zone, datetime(year, 1, 1))
    dec31 = _zone_ts(zone, datetime(year, 12, 31))

    if expr.kind is DatePart.DST_START:
        ts = next_transition(zone, jan1, _zone_ts(zone, datetime(year + 1, 1, 1)))
    else:
        ts = previous_transition(zone, jan1, dec31)

    diag(f"DST lookup {expr.text!r}: year={year} zone={zone_label(zone)} transition_ts={ts}")
    if ts is None:
        raise FormatError(
            expr.text,
            f"No daylight saving transition in {year} for timezone {zone_label(zone)} ('{expr.text}').",
        )

    after = datetime.fromtimestamp(ts, zone).replace(tzinfo=None)
    d = after + timedelta(days=expr.inner_days or 0)
    return _apply_time(d, expr.time or (0, 0))


_RESOLVERS = {
    DatePart.MINUTE: _resolve_minute,
    DatePart.DAY: _resolve_day,
    DatePart.WEEK: _resolve_week,
    DatePart.WEEKDAY_NAME: _resolve_week,
    DatePart.MONTH: _resolve_month,
    DatePart.YEAR: _resolve_year,
    DatePart.DST_START: _resolve_dst,
    DatePart.DST_END: _resolve_dst,
}


# ==============================================================================
# SECTION: Base date & public API
# ==============================================================================
_BASE_DATE: datetime | None = None
_BASE_DATE_LOCK = threading.Lock()


def today() -> datetime:
    """
    Base date for the current run (midnight, local zone).
    Use this instead of datetime.now() to get consistent results for the
    duration of a run.
    """
    global _BASE_DATE
    base = _BASE_DATE
    if base is None:
        with _BASE_DATE_LOCK:
            created = _BASE_DATE is None
            if created:
                _BASE_DATE = truncate_to_midnight(now_local())
            base = _BASE_DATE
        if created:
            diag(f"Base date initialised: {base:%Y-%m-%d}")
    return base


def reset_base_date() -> None:
    """Replace the run's base date with a fresh midnight. Meant for runs that cross midnight."""
    global _BASE_DATE
    fresh = truncate_to_midnight(now_local())
    with _BASE_DATE_LOCK:
        _BASE_DATE = fresh
    diag(f"Base date reset: {fresh:%Y-%m-%d}")


def _base_for(kind: DatePart, base) -> datetime:
    if kind is DatePart.MINUTE:
        return now_local() if base is None else _as_local_datetime(base)
    if base is None:
        return today()
    return truncated_copy(_as_local_datetime(base))


def resolve(expr: RelativeExpression, base=None) -> datetime:
    """Resolve a parsed expression against `base`, or the run's base date when None."""
    start = _base_for(expr.kind, base)
    try:
        return _RESOLVERS[expr.kind](start, expr)
    except (ValueError, OverflowError) as e:
        raise FormatError(expr.text, f"The string '{expr.text}' could not be resolved to a date: {e}") from e


def parse_relative(text: str, base=None) -> datetime:
    """
    Date for a relative expression. `base` is the date the offset applies to;
    None means the run's base date (or the current instant for 'min').
    """
    return resolve(parse_relative_expr(text), base)


# --- Absolute formats ---
_ABSOLUTE_DATE_FORMATS = (
    (re.compile(r"\d{8}", re.ASCII), "%Y%m%d"),
    (re.compile(r"\d{4}-\d{1,2}-\d{1,2}", re.ASCII), "%Y-%m-%d"),
    (re.compile(r"\d{1,2}/\d{1,2}/\d{4}", re.ASCII), "%m/%d/%Y"),
)
_ABSOLUTE_DATETIME_FORMATS = (
    (re.compile(r"\d{4}-\d{1,2}-\d{1,2}\s\d{1,2}:\d{2}", re.ASCII), "%Y-%m-%d %H:%M"),
)


def _parse_absolute(text: str, formats) -> datetime | None:
    for pattern, fmt in formats:
        if pattern.fullmatch(text):
            try:
                return datetime.strptime(text, fmt)
            except ValueError as e:
                raise FormatError(text, f"The string '{text}' is not a valid date: {e}") from e
    return None


def parse_date(text: str) -> datetime:
    """
    Parse an absolute date, 'today' or a relative expression.

    Accepted: 20151231, 2015-12-31, 12/31/2015, today, relative offsets
    (see module docstring), 2015-12-31 17:00. Raises FormatError otherwise.
    """
    if not isinstance(text, str):
        raise FormatError(text)
    d = _parse_absolute(text, _ABSOLUTE_DATE_FORMATS)
    if d is not None:
        return d
    if text.lower() == TODAY:
        return today()
    if is_relative_expression(text):
        return parse_relative(text)
    d = _parse_absolute(text, _ABSOLUTE_DATETIME_FORMATS)
    if d is not None:
        return d
    raise FormatError(text)


# --- Natural text ---
_UNIT_NAMES = {
    DatePart.MINUTE: "minute",
    DatePart.DAY: "day",
    DatePart.WEEK: "week",
    DatePart.WEEKDAY_NAME: "week",
    DatePart.MONTH: "month",
    DatePart.YEAR: "year",
    DatePart.DST_START: "year",
    DatePart.DST_END: "year",
}


def _plural(n: int, unit: str) -> str:
    return f"{n} {unit}" if n == 1 else f"{n} {unit}s"


def describe_expression(text: str) -> str:
    """Short English rendering of a relative expression."""
    expr = parse_relative_expr(text)
    n = expr.initial_offset
    anchor = "now" if expr.kind is DatePart.MINUTE else "today"
    if n == 0:
        when = anchor
    else:
        when = f"{_plural(abs(n), _UNIT_NAMES[expr.kind])} {'after' if n > 0 else 'before'} {anchor}"

    sec = expr.secondary
    if expr.kind in (DatePart.WEEK, DatePart.WEEKDAY_NAME) and _weekday_digit_re.fullmatch(sec):
        out = f"{_WEEKDAY_FULL[int(sec)]} of the week of {when}"
    elif expr.kind in (DatePart.MONTH, DatePart.YEAR) and sec.upper() == "L":
        out = f"last day of the {_UNIT_NAMES[expr.kind]} of {when}"
    elif expr.kind in (DatePart.MONTH, DatePart.YEAR) and _DIGITS_RE.fullmatch(sec):
        out = f"day {int(sec)} of the {_UNIT_NAMES[expr.kind]} of {when}"
    elif expr.kind in (DatePart.DST_START, DatePart.DST_END):
        edge = "start" if expr.kind is DatePart.DST_START else "end"
        out = f"{edge} of daylight saving time in the year of {when}"
        k = expr.inner_days or 0
        if k:
            out += f", {_plural(abs(k), 'day')} {'later' if k > 0 else 'earlier'}"
    else:
        out = when

    if expr.time is not None:
        out += f" at {expr.time[0]:02d}:{expr.time[1]:02d}"
    elif expr.kind in (DatePart.DST_START, DatePart.DST_END):
        out += " at 00:00"
    return out


def _clear_all_caches() -> None:
    """Drop parse and zone caches (after changing tz or limits at runtime)."""
    _parse_relative_expr_cached.cache_clear()
    _zone_for_name.cache_clear()
