"""Exit 0 if chronyd answers a tracking request, 1 otherwise."""

import os
import sys

from .protocol import ChronyException, Client, tracking_request
from .replies import Resolver, decode_tracking
from . import transport

ADDRESS = os.getenv("CHRONY_ADDRESS", "[::1]:323")
TIMEOUT = 2.0


def check(address=ADDRESS, timeout=TIMEOUT, dial=None):
    """Do one tracking round trip, return a one line status."""
    dial = dial or transport.dial
    conn, release = dial(address, timeout)
    try:
        reply = Client(conn).communicate(tracking_request())
        tracking = decode_tracking(reply, Resolver(enabled=False))
    finally:
        release()
    # Stratum 0 means chronyd has no reference yet; still alive.
    return f"OK stratum={tracking.stratum} refid={tracking.ref_id:08X}"


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    address = argv[0] if argv else ADDRESS
    try:
        print(check(address))
        return 0
    except (ChronyException, OSError, ValueError) as e:
        print(f"Healthcheck failure: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
