import logging

__version__ = "1.0.0"

logger = logging.getLogger('v64')
logger.addHandler(logging.NullHandler())
