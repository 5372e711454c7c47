"""Logger used by the tuschunks package."""

import logging

logger = logging.getLogger("tuschunks")
