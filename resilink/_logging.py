# =============================================================================
# Resilink -- Logging
# =============================================================================

import logging

logger = logging.getLogger("resilink")
logger.addHandler(logging.NullHandler())
