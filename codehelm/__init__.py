"""codehelm - a console coding assistant with tools and memory."""

__version__ = "0.1.0"

from codehelm.config import Config

__all__ = ["Config", "__version__"]
