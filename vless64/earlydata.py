import base64
import binascii
import logging
from typing import Optional

logger = logging.getLogger('v64.earlydata')


def decode_early_data(value: Optional[str]) -> Optional[bytes]:
    """Decode the base64url payload a client may put in Sec-WebSocket-Protocol.

    Returns None when the header is absent or is not valid base64url.
    """
    if not value:
        return None
    value = value.strip()
    padded = value + '=' * (-len(value) % 4)
    try:
        data = base64.b64decode(padded, altchars=b'-_', validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning("early data decode failed: %s", e)
        return None
    if not data:
        return None
    logger.debug("early data: %d bytes", len(data))
    return data
