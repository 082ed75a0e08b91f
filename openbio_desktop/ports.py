import logging
import socket

logger = logging.getLogger(__name__)

MAX_PORT = 65535
DEFAULT_PORT_RANGE = 100


def is_port_bindable(port: int, host: str = "0.0.0.0") -> bool:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, port))
            return True
    except OSError:
        return False


def find_available_port(preferred: int, port_range: int = DEFAULT_PORT_RANGE) -> int:
    """
    Return the first port in [preferred, preferred + port_range) that can be bound
    on all interfaces, or `preferred` itself when none can.

    The probe socket is released immediately, so the port may be taken again
    before the caller binds it.
    """
    last = min(preferred + port_range, MAX_PORT + 1)
    for port in range(preferred, last):
        if is_port_bindable(port):
            return port

    logger.warning("No bindable port in %d-%d, keeping %d", preferred, last - 1, preferred)
    return preferred
