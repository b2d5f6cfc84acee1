"""Connectionless sockets to chronyd: UDP or a local unix datagram socket."""

import logging
import os
import socket
import uuid

log = logging.getLogger(__name__)

UNIX_SCHEME = "unix://"
DEFAULT_PORT = 323


def split_host_port(address):
    """Split "host:port", "[v6]:port" or a bare host into (host, port)."""
    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep:
            raise ValueError(f"Invalid address: {address}")
        port = rest[1:] if rest.startswith(":") else ""
    elif address.count(":") == 1:
        host, port = address.split(":")
    else:
        # A bare IPv6 literal or a hostname without port.
        host, port = address, ""
    if not port:
        return host, DEFAULT_PORT
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"Invalid port in address: {address}")


def local_socket_path(remote):
    """Return a unique peer path next to the daemon's socket."""
    base = os.path.dirname(remote)
    return os.path.join(base, f"chrony_exporter.{uuid.uuid4()}.sock")


def _releaser(sock, local=None):
    released = []

    def release():
        if released:
            return
        released.append(True)
        if sock is not None:
            sock.close()
        if local is not None:
            try:
                os.remove(local)
            except FileNotFoundError:
                pass
    return release


def dial_unix(remote, timeout, chmod_socket=False):
    local = local_socket_path(remote)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    release = _releaser(sock, local)
    try:
        sock.bind(local)
        if chmod_socket:
            os.chmod(local, 0o666)
        sock.connect(remote)
        sock.settimeout(timeout)
    except OSError:
        release()
        raise
    log.debug("Bound %s to talk to %s", local, remote)
    return sock, release


def dial_udp(address, timeout):
    host, port = split_host_port(address)
    infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    err = None
    for family, socktype, proto, _, sockaddr in infos:
        sock = socket.socket(family, socktype, proto)
        try:
            sock.settimeout(timeout)
            sock.connect(sockaddr)
        except OSError as e:
            sock.close()
            err = e
            continue
        return sock, _releaser(sock)
    if err is None:
        err = OSError(f"No addresses found for {address}")
    raise err


def dial(address, timeout, chmod_socket=False):
    """Open a channel to chronyd.

    Returns (sock, release). release closes the socket and removes the
    local peer path if there is one; calling it more than once is harmless.
    Dial errors are raised as they come from the socket layer.
    """
    if address.startswith(UNIX_SCHEME):
        return dial_unix(address[len(UNIX_SCHEME):], timeout, chmod_socket)
    return dial_udp(address, timeout)
