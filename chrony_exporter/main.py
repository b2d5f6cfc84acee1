"""chrony_exporter -- Prometheus exporter for chronyd."""

import argparse
import logging
import os
import re
import sys
import time

from prometheus_client import REGISTRY, Info, start_http_server

from . import __version__
from .collector import ChronyCollector, ExporterConfig
from .transport import split_host_port

log = logging.getLogger("chrony_exporter")

_DURATION_RE = re.compile(r"^\s*([0-9]*\.?[0-9]+)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}

LOG_LEVELS = ("debug", "info", "warning", "error")

# promslog level names.
LOG_LEVEL_ALIASES = {"warn": "warning"}


def parse_duration(value):
    """Parse "5s", "250ms", "1m" or bare seconds into float seconds."""
    m = _DURATION_RE.match(value)
    if not m:
        raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2)]


def env_bool(name, default):
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def log_level(value):
    level = value.strip().lower()
    level = LOG_LEVEL_ALIASES.get(level, level)
    if level not in LOG_LEVELS:
        raise argparse.ArgumentTypeError(
            f"invalid log level: {value!r} (choose from {', '.join(LOG_LEVELS)})")
    return level


def listen_address(value):
    """Split ":9123" or "[::]:9123" into (addr, port) for the HTTP server."""
    host, port = split_host_port(value)
    return host or "0.0.0.0", port


def build_parser():
    parser = argparse.ArgumentParser(
        prog="chrony_exporter",
        description="Prometheus Exporter for Chrony NTP")
    parser.add_argument(
        "--chrony.address", dest="address",
        default=os.getenv("CHRONY_ADDRESS", "[::1]:323"),
        help="Address of the Chrony server, host:port or unix:///path/to/chronyd.sock.")
    parser.add_argument(
        "--chrony.timeout", dest="timeout", type=parse_duration,
        default=os.getenv("CHRONY_TIMEOUT", "5s"),
        help="Timeout on requests to the Chrony server.")
    parser.add_argument(
        "--collector.tracking", dest="collect_tracking",
        action=argparse.BooleanOptionalAction,
        default=env_bool("COLLECTOR_TRACKING", True),
        help="Collect tracking metrics.")
    parser.add_argument(
        "--collector.sources", dest="collect_sources",
        action=argparse.BooleanOptionalAction,
        default=env_bool("COLLECTOR_SOURCES", False),
        help="Collect sources metrics.")
    parser.add_argument(
        "--collector.sources.with-ntpdata", dest="collect_ntpdata",
        action=argparse.BooleanOptionalAction,
        default=env_bool("COLLECTOR_NTPDATA", False),
        help="Extend sources with ntpdata metrics (requires socket connection).")
    parser.add_argument(
        "--collector.serverstats", dest="collect_serverstats",
        action=argparse.BooleanOptionalAction,
        default=env_bool("COLLECTOR_SERVERSTATS", False),
        help="Collect serverstats metrics.")
    parser.add_argument(
        "--collector.chmod-socket", dest="chmod_socket",
        action=argparse.BooleanOptionalAction,
        default=env_bool("COLLECTOR_CHMOD_SOCKET", False),
        help="Chmod 0666 the receiving unix datagram socket.")
    parser.add_argument(
        "--collector.dns-lookups", dest="dns_lookups",
        action=argparse.BooleanOptionalAction,
        default=env_bool("COLLECTOR_DNS_LOOKUPS", True),
        help="Do reverse DNS lookups.")
    parser.add_argument(
        "--web.listen-address", dest="listen_address", type=listen_address,
        default=os.getenv("WEB_LISTEN_ADDRESS", ":9123"),
        help="Address on which to expose metrics.")
    parser.add_argument(
        "--log.level", dest="log_level", type=log_level,
        default=os.getenv("LOG_LEVEL", "info"),
        help="Only log messages with the given severity or above.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args):
    return ExporterConfig(
        address=args.address,
        timeout=args.timeout,
        chmod_socket=args.chmod_socket,
        dns_lookups=args.dns_lookups,
        collect_tracking=args.collect_tracking,
        collect_sources=args.collect_sources,
        collect_ntpdata=args.collect_ntpdata,
        collect_serverstats=args.collect_serverstats,
    )


def setup_logging(level):
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    config = config_from_args(args)
    log.info("Starting chrony_exporter %s with %s", __version__, config)

    Info("chrony_exporter_build", "chrony_exporter build information").info(
        {"version": __version__})
    REGISTRY.register(ChronyCollector(config))

    addr, port = args.listen_address
    server, thread = start_http_server(port, addr=addr)
    log.info("Listening on %s:%d", addr, port)

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        log.info("Exiting...")
        server.shutdown()
        thread.join()
    return 0


if __name__ == "__main__":
    sys.exit(main())
