"""Configuration settings for the file drop server.

Settings come from the first existing document among, in order:

1. the path in ``FILEDROP_CONFIG`` (or the path given to :class:`ConfigStore`)
2. ``config.toml`` / ``config.json`` in the working directory
3. ``filedrop/config.toml`` in the user configuration directory
4. ``/etc/filedrop/config.toml`` (not on Windows)

Missing keys take the defaults declared on :class:`Config`.
"""
import asyncio
import json
import os
import sys
import tomllib
from pathlib import Path
from typing import Callable, List, Optional

import aiofiles.os
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from filedrop.errors import ConfigInvalid, DirectoryMisconfigured
from filedrop.logger_config import setup_logger

logger = setup_logger()

CONFIG_ENV_VAR = "FILEDROP_CONFIG"
APP_DIR_NAME = "filedrop"
WATCH_INTERVAL = 2.0  # seconds between config file polls


class Config(BaseModel):
    """One immutable configuration snapshot."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Network
    host: str = "0.0.0.0"
    port: int = Field(default=4040, ge=1, le=65535)
    trust_forwarded_ip: bool = False

    # Directory paths
    upload_dir: str = "files"
    temp_dir: str = "temp"

    # Upload limits
    max_file_size: int = Field(
        default=1_000_000_000,  # 1GB
        ge=0,
        validation_alias=AliasChoices("max_file_size", "max_upload"),
    )
    max_file_name_length: int = Field(default=255, ge=1)
    name_prefix_length: int = Field(
        default=8,
        ge=0,
        validation_alias=AliasChoices("name_prefix_length", "prefix_length"),
    )
    concurrency_limit: int = Field(default=0, ge=0)  # 0 = unbounded

    # Usage statistics rescan period in seconds, 0 disables rescans
    stats_interval: int = Field(default=15, ge=0)

    @property
    def upload_path(self) -> Path:
        return Path(self.upload_dir)

    @property
    def temp_path(self) -> Path:
        return Path(self.temp_dir)


def known_keys() -> set:
    keys = set()
    for name, field in Config.model_fields.items():
        keys.add(name)
        if isinstance(field.validation_alias, AliasChoices):
            keys.update(c for c in field.validation_alias.choices if isinstance(c, str))
    return keys


def user_config_dir() -> Path:
    if sys.platform == "win32":
        base = os.getenv("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / APP_DIR_NAME
    base = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / APP_DIR_NAME


def default_search_paths(override: Optional[Path] = None) -> List[Path]:
    """Candidate config documents in priority order."""
    paths = []
    override = override or os.getenv(CONFIG_ENV_VAR)
    if override:
        paths.append(Path(override))
    paths.append(Path("config.toml"))
    paths.append(Path("config.json"))
    paths.append(user_config_dir() / "config.toml")
    if sys.platform != "win32":
        paths.append(Path("/etc") / APP_DIR_NAME / "config.toml")
    return paths


def parse_document(path: Path) -> dict:
    """Read a TOML or JSON document and return its top-level table."""
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ConfigInvalid(f"Cannot read {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(raw)
        else:
            data = tomllib.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ConfigInvalid(f"Cannot parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigInvalid(f"{path} must contain a table of settings")
    return data


def build_config(data: dict, source: str = "<defaults>") -> Config:
    """Merge a raw settings table over the defaults."""
    unknown = sorted(set(data) - known_keys())
    if unknown:
        logger.warning(f"Ignoring unknown option(s) in {source}: {', '.join(unknown)}")

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigInvalid(f"Invalid settings in {source}: {e}") from e


def check_dir(path: Path) -> None:
    """Create ``path`` if missing; fail if it exists but is not a directory."""
    logger.debug(f"Checking if {path} exists and is a directory")
    if path.exists():
        if not path.is_dir():
            raise DirectoryMisconfigured(path)
        return
    logger.debug(f"{path} doesn't exist, creating")
    path.mkdir(parents=True, exist_ok=True)


def check_separate(upload_path: Path, temp_path: Path) -> None:
    """Fail if the staging and upload directories are the same or nested."""
    upload = upload_path.resolve()
    temp = temp_path.resolve()
    if temp == upload:
        raise DirectoryMisconfigured(temp_path, f"is also the upload directory ({upload_path})")
    if upload in temp.parents:
        raise DirectoryMisconfigured(temp_path, f"is inside the upload directory ({upload_path})")
    if temp in upload.parents:
        raise DirectoryMisconfigured(upload_path, f"is inside the temp directory ({temp_path})")


def prepare_directories(config: Config) -> None:
    check_separate(config.upload_path, config.temp_path)
    check_dir(config.upload_path)
    check_dir(config.temp_path)

    # Publishing links the staged file into place, which only works on one device
    if config.upload_path.stat().st_dev != config.temp_path.stat().st_dev:
        logger.warning(
            f"temp_dir ({config.temp_dir}) and upload_dir ({config.upload_dir}) are on "
            f"different filesystems, uploads will fail to publish"
        )


class ConfigStore:
    """Owns the latest configuration snapshot.

    Readers use :attr:`current`; :meth:`reload` replaces the snapshot with a
    single assignment so nobody ever sees a half-updated configuration.
    """

    def __init__(self, path: Optional[Path] = None, search_paths: Optional[List[Path]] = None):
        self._search_paths = search_paths
        self._override = Path(path) if path else None
        self._current: Optional[Config] = None
        self._source: Optional[Path] = None
        self._source_mtime: Optional[float] = None

    @property
    def current(self) -> Config:
        if self._current is None:
            raise RuntimeError("Configuration has not been loaded")
        return self._current

    @property
    def loaded(self) -> bool:
        return self._current is not None

    @property
    def source(self) -> Optional[Path]:
        """The document the current snapshot was read from, if any."""
        return self._source

    def candidate_paths(self) -> List[Path]:
        if self._search_paths is not None:
            return list(self._search_paths)
        return default_search_paths(self._override)

    def find_source(self) -> Optional[Path]:
        for path in self.candidate_paths():
            if path.is_file():
                return path
        return None

    def _read(self) -> Config:
        """Build a snapshot from the highest priority document.

        Falls back to the last known good snapshot (defaults on first load)
        when the document is malformed.
        """
        fallback = self._current or Config()
        source = self.find_source()
        self._source = source
        if source is None:
            logger.warning("Configuration file does not exist, using default options")
            self._source_mtime = None
            return fallback

        try:
            self._source_mtime = source.stat().st_mtime
        except OSError:
            self._source_mtime = None

        logger.debug(f"Loading configuration from {source}")
        try:
            config = build_config(parse_document(source), str(source))
        except ConfigInvalid as e:
            logger.warning(f"There was an error parsing the configuration file: {e}")
            return fallback

        logger.info(f"Loaded configuration from {source}")
        return config

    def load(self) -> Config:
        """Load the configuration at startup.

        Raises:
            DirectoryMisconfigured: a configured directory is not a directory,
                or the temp and upload directories overlap.
        """
        config = self._read()
        prepare_directories(config)
        self._current = config
        return config

    def reload(self) -> Config:
        """Re-read the configuration, keeping the previous snapshot on failure."""
        previous = self._current
        config = self._read()
        try:
            prepare_directories(config)
        except (DirectoryMisconfigured, OSError) as e:
            logger.error(f"Keeping previous configuration: {e}")
            if previous is None:
                raise
            return previous
        self._current = config
        return config

    async def _source_changed(self) -> bool:
        source = self.find_source()
        if source != self._source:
            return True
        if source is None:
            return False
        try:
            stat = await aiofiles.os.stat(source)
        except FileNotFoundError:
            return True
        return stat.st_mtime != self._source_mtime

    async def watch(self, on_change: Optional[Callable[[Config], None]] = None, interval: float = WATCH_INTERVAL):
        """Poll the config sources and reload when they change. Runs until cancelled."""
        logger.debug(f"Watching configuration sources every {interval}s")
        while True:
            await asyncio.sleep(interval)
            if not await self._source_changed():
                continue

            logger.debug("Configuration file updated, reloading...")
            previous = self._current
            # Blocking: document read and directory checks
            loop = asyncio.get_running_loop()
            config = await loop.run_in_executor(None, self.reload)
            if config is not previous and config != previous:
                logger.info("Configuration reloaded")
                if on_change is not None:
                    on_change(config)
