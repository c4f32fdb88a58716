"""Multi-tenant conversation gateway for email, bot and business messaging channels."""

from .__version__ import __version__

__all__ = ["__version__"]
