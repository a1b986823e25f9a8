from __future__ import annotations

from importlib import metadata


try:
    AGENT_VERSION = metadata.version("neko-traffic-agent")
except metadata.PackageNotFoundError:
    # Running from a source tree without an install.
    AGENT_VERSION = "0.0.0+local"
