from pathlib import Path
import os
import tomllib
from pydantic import BaseModel, Field, ValidationError, field_validator
from typing import Optional
from jinja2 import Template

from rekur.timezones import detect_system_timezone, validate_timezone
from rekur.errors import TimezoneError


# ─── Config Schema ─────────────────────────────────────────────────
class MaterializationConfig(BaseModel):
    default_timezone: str = Field(default_factory=detect_system_timezone)
    lookahead_days: int = Field(30, ge=1, le=3660)
    min_upcoming_instances: int = Field(1, ge=0, le=1000)
    max_batch_size: int = Field(100, ge=1, le=10000)
    enable_catchup: bool = False
    materialization_grace_days: int = Field(3, ge=0, le=365)

    @field_validator("default_timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            return validate_timezone(value)
        except TimezoneError as e:
            raise ValueError(str(e)) from e


class UIConfig(BaseModel):
    ampm: bool = False
    dayfirst: bool = False
    yearfirst: bool = True
    color: bool = True


class FiltersConfig(BaseModel):
    status: str = Field("pending", pattern="^(pending|completed|cancelled|all)$")
    limit: int = Field(50, ge=1)


class RekurConfig(BaseModel):
    title: str = "Rekur Configuration"
    recurrence: MaterializationConfig = Field(default_factory=MaterializationConfig)
    ui: UIConfig = UIConfig()
    default_filters: FiltersConfig = FiltersConfig()


# Environment variables that override values from config.toml.
ENV_OVERRIDES = {
    "REKUR_TIMEZONE": ("recurrence", "default_timezone"),
    "REKUR_LOOKAHEAD_DAYS": ("recurrence", "lookahead_days"),
    "REKUR_MIN_UPCOMING": ("recurrence", "min_upcoming_instances"),
    "REKUR_MAX_BATCH_SIZE": ("recurrence", "max_batch_size"),
    "REKUR_ENABLE_CATCHUP": ("recurrence", "enable_catchup"),
    "REKUR_GRACE_DAYS": ("recurrence", "materialization_grace_days"),
}


# ─── Commented Template ────────────────────────────────────
CONFIG_TEMPLATE = """\
title = "{{ title }}"

[recurrence]
# default_timezone: str = an IANA name such as "America/New_York".
# New series use this zone unless --timezone is given.
default_timezone = "{{ recurrence.default_timezone }}"

# lookahead_days: int >= 1
# Instances are guaranteed to exist this many days past "now".
lookahead_days = {{ recurrence.lookahead_days }}

# min_upcoming_instances: int >= 0
# Extend past the lookahead window until at least this many
# future instances exist for each active series.
min_upcoming_instances = {{ recurrence.min_upcoming_instances }}

# max_batch_size: int >= 1
# Hard cap on instances created for one series in a single pass.
max_batch_size = {{ recurrence.max_batch_size }}

# enable_catchup: bool = true | false
# Backfill occurrences missed before "now".
enable_catchup = {{ recurrence.enable_catchup | lower }}

# materialization_grace_days: int >= 0
# How far into the past catch-up reaches when enabled.
materialization_grace_days = {{ recurrence.materialization_grace_days }}

[ui]
# ampm: bool = true | false
ampm = {{ ui.ampm | lower }}

# dayfirst: bool = true | false
# Read 01/02/2025 as 1 February.
dayfirst = {{ ui.dayfirst | lower }}

# yearfirst: bool = true | false
# Read 25/01/02 with the year first.
yearfirst = {{ ui.yearfirst | lower }}

# color: bool = true | false
# false drops colors from the command line output.
color = {{ ui.color | lower }}

[default_filters]
# status: str = 'pending' | 'completed' | 'cancelled' | 'all'
status = "{{ default_filters.status }}"

# limit: int >= 1, rows shown by `rekur list`
limit = {{ default_filters.limit }}
"""


def render_config(config: RekurConfig) -> str:
    template = Template(CONFIG_TEMPLATE)
    return template.render(**config.model_dump()).strip() + "\n"


def save_config_from_template(config: RekurConfig, path: Path):
    path.write_text(render_config(config), encoding="utf-8")
    print(f"✅ Config saved to {path}")


def apply_env_overrides(config: RekurConfig, environ=None) -> RekurConfig:
    """
    Return a copy of config with any REKUR_* environment overrides applied.

    Invalid override values are reported and ignored.
    """
    environ = os.environ if environ is None else environ
    data = config.model_dump()
    changed = False
    for var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        data[section][key] = value
        changed = True
    if not changed:
        return config
    try:
        return RekurConfig.model_validate(data)
    except ValidationError as e:
        print(f"⚠️ Ignoring invalid REKUR_* environment overrides: {e}")
        return config


class RekurEnvironment:
    def __init__(self):
        self._home = self._resolve_home()
        self._config: Optional[RekurConfig] = None

    @property
    def home(self) -> Path:
        return self._home

    @property
    def config_path(self) -> Path:
        return self.home / "config.toml"

    @property
    def db_path(self) -> Path:
        return self.home / "rekur.db"

    def ensure(self, init_config: bool = True, init_db_fn: Optional[callable] = None):
        self.home.mkdir(parents=True, exist_ok=True)

        if init_config and not self.config_path.exists():
            save_config_from_template(RekurConfig(), self.config_path)

        if init_db_fn and not self.db_path.exists():
            init_db_fn(self.db_path)

    def load_config(self) -> RekurConfig:
        # Step 1: Create the file if it doesn't exist
        if not self.config_path.exists():
            config = RekurConfig()
            self.home.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(render_config(config), encoding="utf-8")
            print(f"✅ Created new config file at {self.config_path}")
            self._config = apply_env_overrides(config)
            return self._config

        # Step 2: Try to load and validate the config
        try:
            with open(self.config_path, "rb") as f:
                data = tomllib.load(f)
            config = RekurConfig.model_validate(data)
        except (ValidationError, tomllib.TOMLDecodeError) as e:
            print(f"⚠️ Config error in {self.config_path}: {e}\nUsing defaults.")
            config = RekurConfig()

        # Step 3: Always regenerate the canonical version
        rendered = render_config(config)
        current_text = self.config_path.read_text(encoding="utf-8")
        if rendered != current_text:
            self.config_path.write_text(rendered, encoding="utf-8")
            print(f"✅ Updated {self.config_path} with any missing defaults.")

        self._config = apply_env_overrides(config)
        return self._config

    @property
    def config(self) -> RekurConfig:
        if self._config is None:
            return self.load_config()
        return self._config

    def _resolve_home(self) -> Path:
        cwd = Path.cwd()
        if (cwd / "config.toml").exists() and (cwd / "rekur.db").exists():
            return cwd

        env_home = os.getenv("REKUR_HOME")
        if env_home:
            return Path(env_home).expanduser()

        xdg_home = os.getenv("XDG_CONFIG_HOME")
        if xdg_home:
            return Path(xdg_home).expanduser() / "rekur"
        else:
            return Path.home() / ".config" / "rekur"
