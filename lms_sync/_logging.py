# =============================================================================
# LMS Sync Client -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("lms_sync")
logger.addHandler(logging.NullHandler())
