"""Decode chronyd replies into canonical records.

Each query has a table of the wire variants chronyd has used for its reply,
oldest first, keyed by the reply type code. Decoders copy whatever a variant
carries into one record class per query; fields a variant does not carry
stay at zero.
"""

import ipaddress
import logging
import socket
import struct
import time

from .protocol import (
    Chrony,
    DecodeError,
    RPY_N_SOURCES,
    RPY_NTP_DATA,
    RPY_SERVER_STATS,
    RPY_SERVER_STATS2,
    RPY_SERVER_STATS3,
    RPY_SERVER_STATS4,
    RPY_SOURCE_DATA,
    RPY_TRACKING,
    IPADDR_INET4,
    float_to_host,
    ipaddr_to_host,
    timespec_to_host,
)

log = logging.getLogger(__name__)

# 127.127.1.1 is chronyd's local reference clock.
LOCAL_REFERENCE_ADDR = ipaddress.IPv4Address("127.127.1.1")


def refid_as_hex(ref_id):
    return "%08X" % ref_id


def refid_to_string(ref_id):
    """Return the printable characters of a 32-bit reference ID."""
    chars = []
    for c in struct.pack("!I", ref_id):
        if 0x20 <= c < 0x7f:
            chars.append(chr(c))
    return "".join(chars)


def reachability_ratio(reach):
    return bin(reach & 0xff).count("1") / 8.0


def reachability_success(reach):
    return reach & 1


class Resolver:
    """Best effort reverse DNS for peer addresses."""

    def __init__(self, enabled=True, lookup=socket.gethostbyaddr, logger=None):
        self.enabled = enabled
        self.lookup = lookup
        self.log = logger or log

    def name(self, ip):
        address = str(ip)
        if not self.enabled:
            return address
        start = time.monotonic()
        try:
            hostname, aliases, _ = self.lookup(address)
        except (OSError, UnicodeError) as e:
            self.log.debug("Reverse lookup of %s failed: %s", address, e)
            return address
        finally:
            self.log.debug("DNS lookup took %.6f seconds", time.monotonic() - start)
        names = [n.rstrip(".") for n in [hostname, *aliases]]
        names = [n for n in names if n]
        if not names:
            return address
        names.sort()
        unique = [names[0]]
        for n in names[1:]:
            if n != unique[-1]:
                unique.append(n)
        return ",".join(unique)


class _Variant:
    """One wire layout of a reply payload."""

    def __init__(self, code, fmt, fields):
        self.code = code
        self.format = fmt
        self.fields = fields
        self.size = struct.calcsize(fmt)

    def unpack(self, payload):
        if len(payload) < self.size:
            raise DecodeError(
                f"Reply type {self.code} too short: {len(payload)} < {self.size} bytes")
        return dict(zip(self.fields, struct.unpack(self.format, payload[:self.size])))


def _select(variants, reply, query):
    for variant in variants:
        if variant.code == reply.reply:
            return variant
    raise DecodeError(f"Unexpected reply type {reply.reply} for {query}")


_ADDR = ("ip_addr", "ip_family", "ip_pad")

TRACKING_VARIANTS = (
    _Variant(RPY_TRACKING, "!I 16sHH H H III 9I", (
        "ref_id", *_ADDR, "stratum", "leap_status",
        "ref_sec_high", "ref_sec_low", "ref_nsec",
        "current_correction", "last_offset", "rms_offset", "freq_ppm",
        "resid_freq_ppm", "skew_ppm", "root_delay", "root_dispersion",
        "last_update_interval",
    )),
)

N_SOURCES_VARIANTS = (
    _Variant(RPY_N_SOURCES, "!I", ("n_sources",)),
)

SOURCE_DATA_VARIANTS = (
    _Variant(RPY_SOURCE_DATA, "!16sHH h H H H H H I 3I", (
        *_ADDR, "poll", "stratum", "state", "mode", "flags", "reachability",
        "since_sample", "orig_latest_meas", "latest_meas", "latest_meas_err",
    )),
)

_STATS2 = (
    "ntp_hits", "nke_hits", "cmd_hits", "ntp_drops", "nke_drops",
    "cmd_drops", "log_drops", "ntp_auth_hits",
)
_STATS3 = _STATS2 + ("ntp_interleaved_hits", "ntp_timestamps", "ntp_span_seconds")
_STATS4 = _STATS3 + (
    "ntp_daemon_rx_timestamps", "ntp_daemon_tx_timestamps",
    "ntp_kernel_rx_timestamps", "ntp_kernel_tx_timestamps",
    "ntp_hw_rx_timestamps", "ntp_hw_tx_timestamps",
)

SERVER_STATS_VARIANTS = (
    _Variant(RPY_SERVER_STATS, "!5I",
             ("ntp_hits", "cmd_hits", "ntp_drops", "cmd_drops", "log_drops")),
    _Variant(RPY_SERVER_STATS2, "!8I", _STATS2),
    _Variant(RPY_SERVER_STATS3, "!11I", _STATS3),
    _Variant(RPY_SERVER_STATS4, "!17Q", _STATS4),
)

NTP_DATA_VARIANTS = (
    _Variant(RPY_NTP_DATA, "!16sHH 16sHH H BBBB bb II I III 5I H BB III", (
        "remote_addr", "remote_family", "remote_pad",
        "local_addr", "local_family", "local_pad",
        "remote_port", "leap", "version", "mode", "stratum", "poll",
        "precision", "root_delay", "root_dispersion", "ref_id",
        "ref_sec_high", "ref_sec_low", "ref_nsec",
        "offset", "peer_delay", "peer_dispersion", "response_time",
        "jitter_asymmetry", "flags", "tx_tss_char", "rx_tss_char",
        "total_tx_count", "total_rx_count", "total_valid_count",
    )),
)


class TrackingRecord:
    """Canonical 'tracking' state."""

    def __init__(self):
        self.ref_id = 0
        self.address = ipaddress.IPv6Address(0)
        self.name = ""
        self.remote = True
        self.stratum = 0
        self.leap_status = 0
        self.last_offset = 0.0
        self.rms_offset = 0.0
        self.root_delay = 0.0
        self.root_dispersion = 0.0
        self.freq_ppm = 0.0
        self.resid_freq_ppm = 0.0
        self.skew_ppm = 0.0
        self.update_interval = 0.0
        self.ref_time = 0.0
        self.current_correction = 0.0


class SourceRecord:
    """Canonical 'sourcedata' for one source, with optional NTP data."""

    def __init__(self):
        self.address = ipaddress.IPv6Address(0)
        self.name = ""
        self.stratum = 0
        self.reachability = 0
        self.reachability_ratio = 0.0
        self.reachability_success = 0
        self.poll = 0
        self.since_sample = 0
        self.latest_meas = 0.0
        self.latest_meas_err = 0.0
        self.orig_latest_meas = 0.0
        self.mode = 0
        self.state = 0
        self.flags = 0
        self.ntpdata = None

    def mode_name(self):
        return Chrony.SOURCE_MODE_TABLE.get(self.mode, f"unknown ({self.mode})")

    def state_name(self):
        return Chrony.SOURCE_STATE_TABLE.get(self.state, f"unknown ({self.state})")


class ServerStatsRecord:
    """Canonical 'serverstats', the union of every wire variant."""

    FIELDS = _STATS4

    def __init__(self):
        for name in self.FIELDS:
            setattr(self, name, 0)


class NTPDataRecord:
    """Canonical 'ntpdata' for one NTP source."""

    def __init__(self):
        self.remote_address = ipaddress.IPv6Address(0)
        self.local_address = ipaddress.IPv6Address(0)
        self.remote_port = 0
        self.leap = 0
        self.version = 0
        self.mode = 0
        self.stratum = 0
        self.poll = 0
        self.precision = 0
        self.root_delay = 0.0
        self.root_dispersion = 0.0
        self.ref_id = 0
        self.ref_time = 0.0
        self.offset = 0.0
        self.peer_delay = 0.0
        self.peer_dispersion = 0.0
        self.response_time = 0.0
        self.jitter_asymmetry = 0.0
        self.flags = 0
        self.total_tx_count = 0
        self.total_rx_count = 0
        self.total_valid_count = 0


def decode_tracking(reply, resolver):
    fields = _select(TRACKING_VARIANTS, reply, "tracking").unpack(reply.payload)

    record = TrackingRecord()
    record.ref_id = fields["ref_id"]
    record.address = ipaddr_to_host(fields["ip_addr"], fields["ip_family"])
    record.stratum = fields["stratum"]
    record.leap_status = fields["leap_status"]
    record.ref_time = timespec_to_host(
        fields["ref_sec_high"], fields["ref_sec_low"], fields["ref_nsec"])
    record.current_correction = float_to_host(fields["current_correction"])
    record.last_offset = float_to_host(fields["last_offset"])
    record.rms_offset = float_to_host(fields["rms_offset"])
    record.freq_ppm = float_to_host(fields["freq_ppm"])
    record.resid_freq_ppm = float_to_host(fields["resid_freq_ppm"])
    record.skew_ppm = float_to_host(fields["skew_ppm"])
    record.root_delay = float_to_host(fields["root_delay"])
    record.root_dispersion = float_to_host(fields["root_dispersion"])
    record.update_interval = float_to_host(fields["last_update_interval"])

    record.remote = record.address != LOCAL_REFERENCE_ADDR
    if record.address.is_unspecified:
        record.name = refid_to_string(record.ref_id)
    else:
        record.name = resolver.name(record.address)
    return record


def decode_n_sources(reply):
    return _select(N_SOURCES_VARIANTS, reply, "sources").unpack(reply.payload)["n_sources"]


def decode_source_data(reply, resolver):
    fields = _select(SOURCE_DATA_VARIANTS, reply, "sourcedata").unpack(reply.payload)

    record = SourceRecord()
    record.address = ipaddr_to_host(fields["ip_addr"], fields["ip_family"])
    record.poll = fields["poll"]
    record.stratum = fields["stratum"]
    record.state = fields["state"]
    record.mode = fields["mode"]
    record.flags = fields["flags"]
    record.reachability = fields["reachability"] & 0xff
    record.reachability_ratio = reachability_ratio(record.reachability)
    record.reachability_success = reachability_success(record.reachability)
    record.since_sample = fields["since_sample"]
    record.orig_latest_meas = float_to_host(fields["orig_latest_meas"])
    record.latest_meas = float_to_host(fields["latest_meas"])
    record.latest_meas_err = float_to_host(fields["latest_meas_err"])

    # Reference clocks carry their refid in the IPv4 address field.
    if record.mode == Chrony.SOURCE_MODE_REF and fields["ip_family"] == IPADDR_INET4:
        record.name = refid_to_string(int(record.address))
    else:
        record.name = resolver.name(record.address)
    return record


def decode_server_stats(reply):
    variant = _select(SERVER_STATS_VARIANTS, reply, "serverstats")
    fields = variant.unpack(reply.payload)

    record = ServerStatsRecord()
    for name, value in fields.items():
        setattr(record, name, value)
    log.debug("Decoded serverstats variant %d", variant.code)
    return record


def decode_ntp_data(reply):
    fields = _select(NTP_DATA_VARIANTS, reply, "ntpdata").unpack(reply.payload)

    record = NTPDataRecord()
    record.remote_address = ipaddr_to_host(fields["remote_addr"], fields["remote_family"])
    record.local_address = ipaddr_to_host(fields["local_addr"], fields["local_family"])
    for name in ("remote_port", "leap", "version", "mode", "stratum", "poll",
                 "precision", "ref_id", "flags", "total_tx_count",
                 "total_rx_count", "total_valid_count"):
        setattr(record, name, fields[name])
    for name in ("root_delay", "root_dispersion", "offset", "peer_delay",
                 "peer_dispersion", "response_time", "jitter_asymmetry"):
        setattr(record, name, float_to_host(fields[name]))
    record.ref_time = timespec_to_host(
        fields["ref_sec_high"], fields["ref_sec_low"], fields["ref_nsec"])
    return record
