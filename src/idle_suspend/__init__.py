"""Suspend or stop an idle machine once its terminal session has gone quiet."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("idle-suspend")
except PackageNotFoundError:  # Running from a source checkout
    __version__ = "0.0.0"
