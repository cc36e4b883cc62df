"""Per-session failures. Each one ends the session with a WebSocket close."""

WS_CLOSE_NORMAL = 1000
WS_CLOSE_ABNORMAL = 1011

# RFC 6455: control frame payload is 125 bytes, 2 of them are the code
_MAX_REASON_BYTES = 123


class GatewayError(Exception):
    close_code = WS_CLOSE_ABNORMAL
    default_reason = "gateway error"

    def __init__(self, reason=None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    @property
    def close_reason(self) -> bytes:
        return self.reason.encode('utf-8')[:_MAX_REASON_BYTES]


class HeaderTooShort(GatewayError):
    default_reason = "invalid header length"


class InvalidCredential(GatewayError):
    default_reason = "invalid user id"


class UnsupportedCommand(GatewayError):
    default_reason = "unsupported command, only TCP(01) and UDP(02) are allowed"


class UnsupportedAddressType(GatewayError):
    default_reason = "unsupported address type"


class UnsupportedUDPPort(GatewayError):
    default_reason = "UDP relay only supports DNS (port 53)"


class InvalidIPv4(GatewayError):
    default_reason = "invalid IPv4 address"


class DestinationUnreachable(GatewayError):
    default_reason = "unable to connect to destination"


class TransportError(GatewayError):
    default_reason = "transport error"
