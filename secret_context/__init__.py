"""Secret Context: encrypted credential vault for workspace users."""
from .version import __version__

__all__ = ["__version__"]
