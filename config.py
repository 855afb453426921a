"""Configuration settings for the letterbox sensor endpoint"""
import logging
import os
import uuid as uuid_module
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings

from errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = ("notifyDbusSignal", "notifyEmail", "rrd", "statistics", "userauth")

TRUE_VALUES = ("1", "true", "yes", "on")


class Settings(BaseSettings):
    """Process settings loaded from environment variables"""

    # Installation config file (flat key=value)
    CONFIG_FILE: str = "/etc/ttn-letterbox/ttn-letterbox.conf"

    LOG_LEVEL: str = "INFO"

    # Artificial response delays (seconds)
    FAILURE_DELAY: float = 3.0
    FAILURE_JITTER: float = 2.0
    SUCCESS_JITTER: float = 0.5

    # Timeout for CAPTCHA verification, SMTP and D-Bus calls
    EXTERNAL_TIMEOUT: float = 5.0

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()


class LetterboxConfig(BaseModel):
    """Installation configuration, built once at startup and never mutated"""

    model_config = ConfigDict(frozen=True)

    path: str
    datadir: str
    autoregister: bool = False
    debug: bool = False
    uuid: Optional[str] = None
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    thresholds: dict[str, int] = Field(default_factory=dict)
    notify_list: str = ""
    extras: dict[str, str] = Field(default_factory=dict)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.extras.get(key, default)

    def flag(self, key: str) -> bool:
        return self.extras.get(key, "").strip().lower() in TRUE_VALUES

    def debug_for(self, name: str) -> bool:
        """Per-extension debug switch, e.g. `userauth.debug=1`."""
        return self.debug or self.flag(f"{name}.debug")

    def threshold_for(self, dev_id: str) -> Optional[int]:
        return self.thresholds.get(dev_id)


def parse_config_text(text: str) -> dict[str, str]:
    """Parse key=value lines; comments and blank lines are skipped, last one wins."""
    values = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            logger.warning(f"config line {lineno} has no '=', skipped: {line}")
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def build_config(path: str, values: dict[str, str]) -> LetterboxConfig:
    values = dict(values)

    datadir = values.pop("datadir", None)
    if not datadir:
        raise ConfigurationError(f"missing entry in config file: datadir ({path})")
    if not os.path.isabs(datadir):
        datadir = os.path.join(os.path.dirname(os.path.abspath(path)), datadir)
    if not os.path.isdir(datadir):
        raise ConfigurationError(f"data directory is not existing: {datadir}")
    if not os.access(datadir, os.W_OK):
        raise ConfigurationError(f"data directory is not writable: {datadir}")

    thresholds = {}
    for key in [k for k in values if k.startswith("threshold.")]:
        raw = values.pop(key)
        try:
            thresholds[key[len("threshold."):]] = int(raw)
        except ValueError:
            raise ConfigurationError(f"threshold is not an integer: {key}={raw}")

    extensions = DEFAULT_EXTENSIONS
    if "extensions" in values:
        names = [n.strip() for n in values.pop("extensions").split(",")]
        extensions = tuple(sorted(n for n in names if n))

    notify_list = values.pop("notify.list", "") or os.path.join(datadir, "ttn.notify.list")

    return LetterboxConfig(
        path=path,
        datadir=datadir,
        autoregister=values.pop("autoregister", "0").lower() in TRUE_VALUES,
        debug=values.pop("debug", "0").lower() in TRUE_VALUES,
        uuid=values.pop("uuid", None) or None,
        extensions=extensions,
        thresholds=thresholds,
        notify_list=notify_list,
        extras=values,
    )


def load_config(path: str) -> LetterboxConfig:
    if not os.path.isfile(path):
        raise ConfigurationError(f"config file is not existing: {path}")
    with open(path, encoding="utf-8") as f:
        values = parse_config_text(f.read())
    config = build_config(path, values)
    logger.info(f"Loaded config {path} (datadir={config.datadir}, extensions={','.join(config.extensions)})")
    return config


def ensure_uuid(config: LetterboxConfig) -> LetterboxConfig:
    """Generate and persist the server secret if the config file lacks one."""
    if config.uuid:
        return config

    new_uuid = str(uuid_module.uuid4())
    logger.info(f"config is not containing an uuid, store generated one: {new_uuid}")
    try:
        with open(config.path, "a", encoding="utf-8") as f:
            f.write(f"\n# autogenerated UUID at {datetime.now().astimezone():%Y-%m-%d %H:%M:%S %Z}\n")
            f.write(f"uuid={new_uuid}\n")
    except OSError as e:
        raise ConfigurationError(f"cannot append uuid to config file {config.path}: {e}")
    return config.model_copy(update={"uuid": new_uuid})
