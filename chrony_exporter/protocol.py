"""Client side of the chrony command and monitoring protocol."""

import ipaddress
import logging
import struct
import threading

log = logging.getLogger(__name__)


PROTO_VERSION = 6

PKT_TYPE_CMD_REQUEST = 1
PKT_TYPE_CMD_REPLY = 2

REQ_N_SOURCES = 14
REQ_SOURCE_DATA = 15
REQ_TRACKING = 33
REQ_SERVER_STATS = 54
REQ_NTP_DATA = 57

RPY_N_SOURCES = 2
RPY_SOURCE_DATA = 3
RPY_TRACKING = 5
RPY_SERVER_STATS = 14
RPY_NTP_DATA = 16
RPY_SERVER_STATS2 = 22
RPY_SERVER_STATS3 = 24
RPY_SERVER_STATS4 = 25

STT_SUCCESS = 0

IPADDR_UNSPEC = 0
IPADDR_INET4 = 1
IPADDR_INET6 = 2
IPADDR_ID = 3

# Requests are padded so they are never shorter than the reply.
MAX_DATA_LEN = 396
REQUEST_LEN = 20 + MAX_DATA_LEN
MAX_REPLY_LEN = 1024

TV_NOHIGHSEC = 0x7fffffff

FLOAT_EXP_BITS = 7
FLOAT_COEF_BITS = 32 - FLOAT_EXP_BITS


class ChronyException(Exception):
    """Exception raised by this module."""
    pass


class ProtocolError(ChronyException):
    """The daemon answered, but not with what was asked for."""
    pass


class DecodeError(ChronyException):
    """A reply could not be decoded."""
    pass


class Chrony:
    """Helper class defining protocol constants."""

    STATUS_TABLE = {
        0: "success",
        1: "failed",
        2: "unauthorised",
        3: "invalid",
        4: "no such source",
        5: "invalid timestamp",
        6: "not enabled",
        7: "bad subnet",
        8: "access allowed",
        9: "access denied",
        10: "no host access",
        11: "source already known",
        12: "too many sources",
        13: "no RTC",
        14: "bad RTC file",
        15: "inactive",
        16: "bad sample",
        17: "invalid address family",
        18: "bad packet version",
        19: "bad packet length",
        21: "invalid name",
    }

    SOURCE_STATE_TABLE = {
        0: "sync",
        1: "unreach",
        2: "falseticker",
        3: "jittery",
        4: "candidate",
        5: "outlier",
    }

    SOURCE_MODE_CLIENT = 0
    SOURCE_MODE_PEER = 1
    SOURCE_MODE_REF = 2

    SOURCE_MODE_TABLE = {
        0: "client",
        1: "peer",
        2: "reference clock",
    }

    LEAP_TABLE = {
        0: "normal",
        1: "insert second",
        2: "delete second",
        3: "not synchronised",
    }

    @staticmethod
    def status_name(status):
        return Chrony.STATUS_TABLE.get(status, f"unknown status {status}")


def float_to_host(raw):
    """Decode a chrony network float into a Python float."""
    exp = raw >> FLOAT_COEF_BITS
    if exp >= 1 << (FLOAT_EXP_BITS - 1):
        exp -= 1 << FLOAT_EXP_BITS
    exp -= FLOAT_COEF_BITS

    coef = raw % (1 << FLOAT_COEF_BITS)
    if coef >= 1 << (FLOAT_COEF_BITS - 1):
        coef -= 1 << FLOAT_COEF_BITS

    return coef * 2.0 ** exp


def timespec_to_host(sec_high, sec_low, nsec):
    """Return a Unix timestamp from its wire parts."""
    if sec_high == TV_NOHIGHSEC:
        sec_high = 0
    return float((sec_high << 32) | sec_low) + nsec / 1e9


def ipaddr_to_host(addr, family):
    """Return an ipaddress object for a wire IP address."""
    if family == IPADDR_INET4:
        return ipaddress.IPv4Address(addr[:4])
    return ipaddress.IPv6Address(addr[:16])


def ipaddr_to_network(ip):
    """Pack an ipaddress object into the 20 byte wire form."""
    if ip.version == 4:
        return struct.pack("!16sHH", ip.packed, IPADDR_INET4, 0)
    return struct.pack("!16sHH", ip.packed, IPADDR_INET6, 0)


class AtomicCounter:
    """A thread safe, monotonically increasing counter."""

    def __init__(self, start=1):
        self._next = start
        self._lock = threading.Lock()

    def next(self):
        with self._lock:
            value = self._next
            self._next += 1
        return value


class Request:
    """A command request, padded to a fixed length."""

    _HEAD_FORMAT = "!B B B B H H I I I"

    def __init__(self, command, payload=b""):
        self.command = command
        self.payload = payload

    def to_data(self, sequence):
        """Convert this request into a binary buffer."""
        try:
            head = struct.pack(
                Request._HEAD_FORMAT,
                PROTO_VERSION,
                PKT_TYPE_CMD_REQUEST,
                0,
                0,
                self.command,
                0,
                sequence,
                0,
                0,
            )
        except struct.error:
            raise ChronyException("Invalid request fields.")
        data = head + self.payload
        return data + bytes(REQUEST_LEN - len(data))

    def __repr__(self):
        return f"Request(command={self.command})"


def tracking_request():
    return Request(REQ_TRACKING)


def n_sources_request():
    return Request(REQ_N_SOURCES)


def source_data_request(index):
    return Request(REQ_SOURCE_DATA, struct.pack("!ii", index, 0))


def server_stats_request():
    return Request(REQ_SERVER_STATS)


def ntp_data_request(ip):
    return Request(REQ_NTP_DATA, ipaddr_to_network(ip) + struct.pack("!i", 0))


class ReplyEnvelope:
    """Header of a reply packet and the raw variant payload."""

    _HEAD_FORMAT = "!B B B B H H H H H H I I I"
    HEAD_LEN = struct.calcsize(_HEAD_FORMAT)

    def __init__(self):
        self.version = 0
        self.pkt_type = 0
        self.command = 0
        self.reply = 0
        self.status = 0
        self.sequence = 0
        self.payload = b""

    def from_data(self, data):
        """Populate this envelope from a received binary buffer."""
        if len(data) < ReplyEnvelope.HEAD_LEN:
            raise DecodeError(f"Invalid reply: too short ({len(data)} bytes)")
        try:
            unpacked = struct.unpack(
                ReplyEnvelope._HEAD_FORMAT,
                data[0:ReplyEnvelope.HEAD_LEN]
            )
        except struct.error:
            raise DecodeError("Invalid reply: unpack error")

        self.version = unpacked[0]
        self.pkt_type = unpacked[1]
        self.command = unpacked[4]
        self.reply = unpacked[5]
        self.status = unpacked[6]
        self.sequence = unpacked[10]
        self.payload = bytes(data[ReplyEnvelope.HEAD_LEN:])
        return self

    def status_name(self):
        return Chrony.status_name(self.status)


class Client:
    """Sends one request and reads one reply at a time over a connected socket."""

    def __init__(self, conn, sequence=None):
        self.conn = conn
        self.sequence = sequence if sequence is not None else AtomicCounter()

    def communicate(self, request):
        """Send request and return the validated ReplyEnvelope."""
        seq = self.sequence.next()
        self.conn.send(request.to_data(seq))
        data = self.conn.recv(MAX_REPLY_LEN)
        reply = ReplyEnvelope().from_data(data)
        log.debug("Received reply type %d status %d seq %d for command %d",
                  reply.reply, reply.status, reply.sequence, request.command)

        if reply.pkt_type != PKT_TYPE_CMD_REPLY:
            raise ProtocolError(f"Unexpected packet type {reply.pkt_type}")
        if reply.sequence != seq:
            raise ProtocolError(
                f"Sequence mismatch: sent {seq}, received {reply.sequence}")
        if reply.command != request.command:
            raise ProtocolError(
                f"Command mismatch: sent {request.command}, received {reply.command}")
        if reply.status != STT_SUCCESS:
            raise ProtocolError(
                f"Request {request.command} failed: {reply.status_name()}")
        return reply
