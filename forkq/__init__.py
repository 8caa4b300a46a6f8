"""forkq — fork-based process orchestration with a bounded priority queue."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("forkq")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
