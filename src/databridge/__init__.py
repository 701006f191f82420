"""DataBridge - Staged migration engine for heterogeneous databases."""

import logging
import warnings

__version__ = "0.1.0"
__author__ = "DataBridge Team"
__license__ = "Apache-2.0"

# Suppress verbose third-party library logging
# Connection pools and HTTP transports log every request at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpcore.connection").setLevel(logging.WARNING)
logging.getLogger("httpcore.http11").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

warnings.filterwarnings("ignore", category=DeprecationWarning, module="httpx")
