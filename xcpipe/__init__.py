"""xcpipe package."""

import logging

from .api import assemble, run
from .core.version import __version__

logging.getLogger("xcpipe").addHandler(logging.NullHandler())

__all__ = ["assemble", "run", "__version__"]
