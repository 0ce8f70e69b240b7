import inspect
import textwrap
import shutil
import os
import secrets
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

from rekur.rekur_env import RekurEnvironment
from rekur.timezones import get_zone

env = RekurEnvironment()

ELLIPSIS_CHAR = "…"
REPEATING = "↻"  # Flag for series instances and templates
SHORT_ID_LENGTH = 8


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def fmt_utc_z(dt: datetime) -> str:
    """Aware/naive → UTC aware → 'YYYYMMDDTHHMMSSZ'."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y%m%dT%H%M%SZ")


def parse_utc_z(s: str) -> datetime:
    """
    'YYYYMMDDTHHMMZ' or 'YYYYMMDDTHHMMSSZ' → aware datetime in UTC.
    Accept minutes-only values written by older versions.
    """
    body = s.strip()
    if not body.endswith("Z"):
        raise ValueError(f"Expected a UTC timestamp ending in 'Z', got {s!r}")
    body = body[:-1]
    fmt = "%Y%m%dT%H%M%S" if len(body) == 15 else "%Y%m%dT%H%M"
    dt = datetime.strptime(body, fmt)
    return dt.replace(tzinfo=timezone.utc)


def fmt_opt_utc_z(dt: datetime | None) -> str | None:
    return fmt_utc_z(dt) if dt is not None else None


def parse_opt_utc_z(s: str | None) -> datetime | None:
    return parse_utc_z(s) if s else None


def new_id() -> str:
    """
    Return a time-ordered UUIDv7 string.

    Field layout from RFC 9562, section 5.7, most significant bit first:

        unix_ts_ms (48) | ver = 0b0111 (4) | rand_a (12)
        var = 0b10 (2) | rand_b (62)

    Ids sort by creation time to the millisecond.
    """
    millis = time.time_ns() // 1_000_000
    rand_a = secrets.randbits(12)
    rand_b = secrets.randbits(62)
    value = (millis & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= rand_a << 64
    value |= 0b10 << 62
    value |= rand_b
    return str(uuid.UUID(int=value))


def short_id(full_id: str | None) -> str:
    """
    Display form of an id: the trailing random hex digits.

    The leading digits of a UUIDv7 are a timestamp shared by ids created in
    the same pass, so the tail is what tells them apart.
    """
    if not full_id:
        return ""
    return full_id.replace("-", "")[-SHORT_ID_LENGTH:]


def truncate_string(s: str, max_length: int) -> str:
    if len(s) > max_length:
        return f"{s[: max_length - 2]} {ELLIPSIS_CHAR}"
    return s


def format_local(dt: datetime | None, zone=None, ampm: bool = False) -> str:
    """Render an aware instant in zone (or the machine zone) for display."""
    if dt is None:
        return "-"
    local = dt.astimezone(get_zone(zone)) if zone is not None else dt.astimezone()
    timefmt = "%-I:%M%p" if ampm else "%H:%M"
    text = local.strftime(f"%a %Y-%m-%d {timefmt}")
    return text.replace("AM", "am").replace("PM", "pm")


def duration_in_words(seconds: int, short: bool = False) -> str:
    """
    Convert a duration in seconds into a human-readable string.

    Args:
        seconds (int): The duration in seconds (may be negative).
        short (bool): Keep only the two most significant units.

    Returns:
        str: e.g. '2 days 3 hours' or '45 minutes'.
    """
    units = [
        ("week", 604800),
        ("day", 86400),
        ("hour", 3600),
        ("minute", 60),
    ]
    sign = "-" if seconds < 0 else ""
    remaining = abs(int(seconds))
    parts = []
    for name, size in units:
        value, remaining = divmod(remaining, size)
        if value:
            parts.append(f"{value} {name}{'s' if value != 1 else ''}")
    if not parts:
        return "now"
    if short:
        parts = parts[:2]
    return sign + " ".join(parts)


def relative_to_now(dt: datetime | None, now: datetime | None = None) -> str:
    if dt is None:
        return ""
    now = now or utc_now()
    delta = int((dt - now).total_seconds())
    if abs(delta) < 60:
        return "now"
    words = duration_in_words(abs(delta), short=True)
    return f"in {words}" if delta > 0 else f"{words} ago"


def _get_runtime_home() -> Path:
    override = os.environ.get("REKUR_HOME")
    if override:
        return Path(override).expanduser()
    return env.home


def _resolve_log_file_path(file_path: str | Path) -> Path:
    path = Path(file_path)
    if path.is_absolute():
        return path
    return _get_runtime_home() / path


def _default_log_relative_path(kind: str) -> Path:
    """Return logs/log_<YYMMDD>.md style paths under the runtime home."""
    suffix = datetime.now().strftime("%y%m%d")
    return Path("logs") / f"{kind}_{suffix}.md"


def log_msg(
    msg: str,
    file_path: str | Path | None = None,
    print_output: bool = False,
):
    """
    Log a message and save it directly to a file.

    Args:
        msg (str): The message to log.
        file_path (str | Path | None, optional): Overrides the default path when
            provided. Defaults to ``None`` which writes to ``logs/log_<YYMMDD>.md``.
        print_output (bool, optional): If True, also print to console.
    """
    frame = inspect.stack()[1].frame
    func_name = frame.f_code.co_name

    # Default: just function name
    caller_name = func_name

    # Detect instance/class/static context
    if "self" in frame.f_locals:  # instance method
        cls_name = frame.f_locals["self"].__class__.__name__
        caller_name = f"{cls_name}.{func_name}"
    elif "cls" in frame.f_locals:  # classmethod
        cls_name = frame.f_locals["cls"].__name__
        caller_name = f"{cls_name}.{func_name}"
    else:
        module = inspect.getmodule(frame)
        if module is not None:
            caller_name = f"{module.__name__.rsplit('.', 1)[-1]}.{func_name}"

    # Format the line header
    lines = [
        f"- {datetime.now().strftime('%H:%M:%S')} log_msg ({caller_name}):  ",
    ]
    # Wrap the message text
    lines.extend(
        [
            f"\n{x}"
            for x in textwrap.wrap(
                msg.strip(),
                width=max(shutil.get_terminal_size()[0] - 6, 20),
                initial_indent="   ",
                subsequent_indent="   ",
            )
        ]
    )
    lines.append("\n\n")

    # Best-effort file logging; fall back to console when the file is unwritable.
    if file_path is None:
        file_path = _default_log_relative_path("log")
    log_path = _resolve_log_file_path(file_path)

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.writelines(lines)
    except OSError:
        print_output = True

    if print_output:
        print("".join(lines))
