"""Configuration for a filesystem profile.

Each profile has a data directory holding ``config.toml``, the session
file, the metadata database and the chunk cache. Environment variables
override values read from the file.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import tomli_w

__all__ = [
    "ENV_PROFILE",
    "ENV_API_ID",
    "ENV_API_HASH",
    "ENV_PHONE",
    "ENV_DC",
    "CONFIG_FILE",
    "SESSION_FILE",
    "DB_FILE",
    "CACHE_DIR",
    "ConfigError",
    "NoActiveProfileError",
    "InvalidProfileNameError",
    "AuthMode",
    "ChannelConfig",
    "Config",
    "validate_profile_name",
    "profiles_root",
    "profile_dir",
    "default_dir",
    "set_active_profile",
    "active_profile",
    "load",
    "load_from_dir",
]

ENV_PROFILE = "TELFS_PROFILE"
ENV_API_ID = "TELFS_API_ID"
ENV_API_HASH = "TELFS_API_HASH"
ENV_PHONE = "TELFS_PHONE"
ENV_DC = "TELFS_DC"

CONFIG_FILE = "config.toml"
SESSION_FILE = "session.json"
DB_FILE = "db.sqlite"
CACHE_DIR = "cache"

_ACTIVE_FILE = "active"
_PROFILE_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_"
)


class ConfigError(Exception):
    """The configuration is missing, invalid or could not be read."""


class NoActiveProfileError(ConfigError):
    """No profile is selected by environment or active-profile file."""

    def __init__(self) -> None:
        super().__init__(
            "no active TelFS profile — set TELFS_PROFILE or run "
            "`telfs profile use <name>`"
        )


class InvalidProfileNameError(ConfigError, ValueError):
    """A profile name is empty or contains characters outside a-z A-Z 0-9 - _."""


class AuthMode(StrEnum):
    """Login style: interactive user account or bot token."""

    USER = "user"
    BOT = "bot"


@dataclass
class ChannelConfig:
    """Resolved peer reference for the backing channel."""

    id: int = 0
    access_hash: int = 0
    title: str = ""
    username: str = ""


@dataclass
class Config:
    """Persistent configuration of one profile."""

    api_id: int = 0
    api_hash: str = ""
    phone: str = ""
    auth_mode: str = ""
    bot_token: str = ""
    dc: int = 0
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    data_dir: Path = field(default_factory=Path)

    @property
    def config_path(self) -> Path:
        return Path(self.data_dir) / CONFIG_FILE

    @property
    def session_path(self) -> Path:
        return Path(self.data_dir) / SESSION_FILE

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / DB_FILE

    @property
    def cache_path(self) -> Path:
        return Path(self.data_dir) / CACHE_DIR

    def effective_auth_mode(self) -> AuthMode:
        """Return BOT only when explicitly set; anything else means USER."""
        return AuthMode.BOT if self.auth_mode == AuthMode.BOT else AuthMode.USER

    def _to_toml(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"api_id": self.api_id, "api_hash": self.api_hash}
        optional = (
            ("phone", self.phone),
            ("auth_mode", str(self.auth_mode)),
            ("bot_token", self.bot_token),
            ("dc", self.dc),
        )
        doc.update({key: value for key, value in optional if value})
        channel = (
            ("id", self.channel.id),
            ("access_hash", self.channel.access_hash),
            ("title", self.channel.title),
            ("username", self.channel.username),
        )
        doc["channel"] = {key: value for key, value in channel if value}
        return doc

    def save(self) -> None:
        """Write the configuration atomically with owner-only permissions."""
        Path(self.data_dir).mkdir(mode=0o700, parents=True, exist_ok=True)
        target = self.config_path
        tmp = target.with_name(target.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            with os.fdopen(fd, "wb") as handle:
                tomli_w.dump(self._to_toml(), handle)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
        os.replace(tmp, target)

    def require_api(self) -> None:
        """Raise :class:`ConfigError` unless API credentials are present."""
        missing = []
        if self.api_id == 0:
            missing.append("api_id")
        if not self.api_hash:
            missing.append("api_hash")
        if missing:
            raise ConfigError(
                f"missing Telegram credentials: {', '.join(missing)}\n"
                f"  set via env ({ENV_API_ID}, {ENV_API_HASH}) or edit {self.config_path}\n"
                "  obtain them from your Telegram developer account"
            )

    def require_channel(self) -> None:
        """Raise :class:`ConfigError` unless a backing channel is configured."""
        if self.channel.id == 0 or self.channel.access_hash == 0:
            raise ConfigError(
                "no channel configured — run 'telfs channel list' then "
                "'telfs channel set <id>'"
            )


def validate_profile_name(name: str) -> None:
    """Raise :class:`InvalidProfileNameError` unless ``name`` is a safe identifier."""
    if not name:
        raise InvalidProfileNameError("profile name must not be empty")
    for char in name:
        if char not in _PROFILE_CHARS:
            raise InvalidProfileNameError(
                f"profile name {name!r} contains invalid character {char!r} "
                "(allowed: a-z A-Z 0-9 - _)"
            )


def _config_home() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME", "").strip()
    if xdg:
        return Path(xdg) / "telfs"
    return Path.home() / ".config" / "telfs"


def profiles_root() -> Path:
    """Return the directory that holds every named profile."""
    return _config_home() / "profiles"


def profile_dir(name: str) -> Path:
    """Return the data directory of profile ``name``."""
    validate_profile_name(name)
    return profiles_root() / name


def _read_active_profile() -> str | None:
    try:
        name = (_config_home() / _ACTIVE_FILE).read_text().strip()
    except (OSError, UnicodeDecodeError, RuntimeError):
        return None
    try:
        validate_profile_name(name)
    except InvalidProfileNameError:
        return None
    return name


def default_dir() -> Path:
    """Resolve the data directory: ``$TELFS_PROFILE`` first, then the active file."""
    name = os.environ.get(ENV_PROFILE, "").strip()
    if name:
        return profile_dir(name)
    name = _read_active_profile()
    if name:
        return profile_dir(name)
    raise NoActiveProfileError()


def set_active_profile(name: str) -> None:
    """Make ``name`` the default profile for later commands."""
    validate_profile_name(name)
    root = _config_home()
    root.mkdir(mode=0o700, parents=True, exist_ok=True)
    path = root / _ACTIVE_FILE
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(name + "\n")


def active_profile() -> str:
    """Return the active profile name, or ``""`` when none is selected."""
    name = os.environ.get(ENV_PROFILE, "").strip()
    if name:
        return name
    return _read_active_profile() or ""


def load() -> Config:
    """Load the configuration of the active profile."""
    return load_from_dir(default_dir())


def _take(table: dict[str, Any], key: str, kind: type, default: Any, where: Path) -> Any:
    if key not in table:
        return default
    value = table[key]
    valid = isinstance(value, kind) and not (kind is int and isinstance(value, bool))
    if not valid:
        raise ConfigError(f"decode {where}: {key}: expected {kind.__name__}, got {value!r}")
    return value


def _env_int(name: str) -> int | None:
    value = os.environ.get(name, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigError(f"invalid {name}={value!r}: {exc}") from exc


def load_from_dir(directory: str | os.PathLike[str]) -> Config:
    """Load the configuration in ``directory``, creating it if needed.

    Environment variables override what the file holds.
    """
    directory = Path(directory)
    try:
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"create data dir {directory}: {exc}") from exc

    cfg = Config(data_dir=directory)
    path = cfg.config_path
    try:
        with path.open("rb") as handle:
            doc = tomllib.load(handle)
    except FileNotFoundError:
        doc = {}
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"decode {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"read {path}: {exc}") from exc

    cfg.api_id = _take(doc, "api_id", int, 0, path)
    cfg.api_hash = _take(doc, "api_hash", str, "", path)
    cfg.phone = _take(doc, "phone", str, "", path)
    cfg.auth_mode = _take(doc, "auth_mode", str, "", path)
    cfg.bot_token = _take(doc, "bot_token", str, "", path)
    cfg.dc = _take(doc, "dc", int, 0, path)
    channel = _take(doc, "channel", dict, {}, path)
    cfg.channel = ChannelConfig(
        id=_take(channel, "id", int, 0, path),
        access_hash=_take(channel, "access_hash", int, 0, path),
        title=_take(channel, "title", str, "", path),
        username=_take(channel, "username", str, "", path),
    )

    api_id = _env_int(ENV_API_ID)
    if api_id is not None:
        cfg.api_id = api_id
    api_hash = os.environ.get(ENV_API_HASH, "").strip()
    if api_hash:
        cfg.api_hash = api_hash
    phone = os.environ.get(ENV_PHONE, "").strip()
    if phone:
        cfg.phone = phone
    dc = _env_int(ENV_DC)
    if dc is not None:
        cfg.dc = dc
    return cfg