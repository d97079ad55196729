"""evoledger — evolving assets, learned personalities, utility-linked staking."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("evoledger")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
