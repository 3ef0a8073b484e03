"""g-bridge - connect long-lived AI assistants to external chat platforms."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("g-bridge")
except PackageNotFoundError:
    __version__ = "0.1.0"

__logo__ = "🗿"
__brand__ = "g-bridge"
