"""Extension base class and the ordered extension registry

Extensions implement any subset of the capability methods; the registry
detects them by name and calls them in lexicographic order of the extension
name:

    init()                                   once after construction
    init_device(dev_id)                      before a device is touched
    store_data(dev_id, received, uplink)     after each accepted uplink
    get_graphics(dev_id, ctx) -> dict        dashboard images per device
    html_actions(ctx) -> str                 dashboard controls
    auth_check / auth_verify / auth_show / is_permitted   authenticator
"""
import logging
from typing import Any, Iterator, Optional

from errors import ConfigurationError

logger = logging.getLogger(__name__)

CAPABILITIES = (
    "init",
    "init_device",
    "store_data",
    "get_graphics",
    "html_actions",
    "auth_check",
    "auth_verify",
    "auth_show",
    "is_permitted",
)


class Extension:
    name = ""

    def __init__(self, config, settings):
        self.config = config
        self.settings = settings
        self.debug = config.debug_for(self.name)

    def log_debug(self, message: str) -> None:
        if self.debug:
            logger.info(f"{self.name}: {message}")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class ExtensionRegistry:
    """Ordered extensions with capability detection"""

    def __init__(self, extensions: list[Extension]):
        self.extensions = sorted(extensions, key=lambda e: e.name)

    def __iter__(self) -> Iterator[Extension]:
        return iter(self.extensions)

    def __len__(self) -> int:
        return len(self.extensions)

    def get(self, name: str) -> Optional[Extension]:
        for extension in self.extensions:
            if extension.name == name:
                return extension
        return None

    def implementing(self, capability: str) -> list[Extension]:
        if capability not in CAPABILITIES:
            raise ValueError(f"unknown capability: {capability}")
        return [e for e in self.extensions if callable(getattr(e, capability, None))]

    def has(self, capability: str) -> bool:
        return bool(self.implementing(capability))

    def call(self, capability: str, *args, **kwargs) -> list[Any]:
        results = []
        for extension in self.implementing(capability):
            results.append(getattr(extension, capability)(*args, **kwargs))
        return results

    @property
    def authenticator(self) -> Optional[Extension]:
        providers = self.implementing("auth_check")
        return providers[0] if providers else None


def extension_classes() -> dict[str, type]:
    from extensions.notify_dbus_signal import NotifyDbusSignal
    from extensions.notify_email import NotifyEmail
    from extensions.rrd import Rrd
    from extensions.statistics import Statistics
    from extensions.userauth import UserAuth

    return {cls.name: cls for cls in (NotifyDbusSignal, NotifyEmail, Rrd, Statistics, UserAuth)}


def build_registry(config, settings) -> ExtensionRegistry:
    """Instantiate and initialise the configured extensions."""
    available = extension_classes()
    extensions = []
    for name in config.extensions:
        if name not in available:
            raise ConfigurationError(f"unknown extension in config: {name}")
        extensions.append(available[name](config, settings))

    registry = ExtensionRegistry(extensions)
    registry.call("init")
    logger.info(f"Extensions active: {', '.join(e.name for e in registry) or 'none'}")
    return registry
