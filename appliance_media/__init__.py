"""Build bootable, fully provisioned appliance deployment media."""

from .__version__ import __version__

__all__ = ["__version__"]
