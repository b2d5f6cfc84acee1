"""Prometheus collector that scrapes chronyd on every collection."""

import collections
import logging
import socket
import time

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from . import metrics
from . import transport
from .protocol import (
    AtomicCounter,
    Chrony,
    ChronyException,
    Client,
    n_sources_request,
    ntp_data_request,
    server_stats_request,
    source_data_request,
    tracking_request,
)
from .replies import (
    Resolver,
    decode_n_sources,
    decode_ntp_data,
    decode_server_stats,
    decode_source_data,
    decode_tracking,
)

log = logging.getLogger("chrony_exporter")


class ExporterConfig:
    """Settings handed over by the command line."""

    def __init__(self,
                 address="[::1]:323",
                 timeout=5.0,
                 chmod_socket=False,
                 dns_lookups=True,
                 collect_tracking=True,
                 collect_sources=False,
                 collect_ntpdata=False,
                 collect_serverstats=False):
        self.address = address
        self.timeout = timeout
        self.chmod_socket = chmod_socket
        self.dns_lookups = dns_lookups
        self.collect_tracking = collect_tracking
        self.collect_sources = collect_sources
        self.collect_ntpdata = collect_ntpdata
        self.collect_serverstats = collect_serverstats

    def __repr__(self):
        return "ExporterConfig(%s)" % ", ".join(
            f"{k}={v!r}" for k, v in sorted(vars(self).items()))


class ScrapeLogger(logging.LoggerAdapter):
    """Prefix every message with the scrape it belongs to."""

    def process(self, msg, kwargs):
        kwargs.setdefault("extra", self.extra)
        return "scrape_id=%s %s" % (self.extra["scrape_id"], msg), kwargs


def metric_families(observations):
    """Group observations into prometheus_client metric families."""
    families = collections.OrderedDict()
    for obs in observations:
        doc, kind, labelnames = metrics.DESCRIPTIONS[obs.name[len(metrics.NAMESPACE) + 1:]]
        family = families.get(obs.name)
        if family is None:
            if kind == metrics.COUNTER:
                family = CounterMetricFamily(obs.name, doc, labels=labelnames)
            else:
                family = GaugeMetricFamily(obs.name, doc, labels=labelnames)
            families[obs.name] = family
        family.add_metric([obs.labels[n] for n in labelnames], obs.value)
    return list(families.values())


class ChronyCollector:
    """Collects chrony stats from one chronyd on each scrape.

    Every scrape opens its own socket and its own Client, so concurrent
    scrapes share nothing but the scrape id counter.
    """

    def __init__(self, config, logger=None, dial=transport.dial,
                 lookup=socket.gethostbyaddr):
        self.config = config
        self.log = logger or log
        self.dial = dial
        self.lookup = lookup
        self.scrape_ids = AtomicCounter()

    def describe(self):
        # Metrics depend on what chronyd reports, do not scrape at register time.
        return []

    def collect(self):
        for family in metric_families(self.scrape()):
            yield family

    def scrape(self):
        """Run one scrape and return its observations, chrony_up last."""
        logger = ScrapeLogger(self.log, {"scrape_id": self.scrape_ids.next()})
        start = time.monotonic()
        logger.debug("Scrape starting")
        observations = []
        up = 0
        try:
            up = self._scrape(logger, observations)
        finally:
            logger.debug("Scrape completed in %.6f seconds", time.monotonic() - start)
            observations.extend(metrics.up_metrics(up))
        return observations

    def _scrape(self, logger, observations):
        conf = self.config
        try:
            conn, release = self.dial(conf.address, conf.timeout, conf.chmod_socket)
        except (OSError, ValueError) as e:
            logger.error("Couldn't connect to chrony at %s: %s", conf.address, e)
            return 0

        up = 1
        try:
            client = Client(conn)
            resolver = Resolver(conf.dns_lookups, self.lookup, logger)
            queries = (
                ("tracking", conf.collect_tracking, self.tracking),
                ("sources", conf.collect_sources, self.sources),
                ("serverstats", conf.collect_serverstats, self.serverstats),
            )
            for name, enabled, query in queries:
                if not enabled:
                    continue
                try:
                    observations.extend(query(logger, client, resolver))
                except (ChronyException, OSError) as e:
                    logger.error("Couldn't get %s: %s", name, e)
                    up = 0
        finally:
            release()
        return up

    def tracking(self, logger, client, resolver):
        reply = client.communicate(tracking_request())
        logger.debug("Got 'tracking' response: %s", reply.status_name())
        record = decode_tracking(reply, resolver)

        logger.debug("Tracking reference %s (%s) refid %08X stratum %d leap %s",
                     record.address, record.name, record.ref_id, record.stratum,
                     Chrony.LEAP_TABLE.get(record.leap_status, record.leap_status))
        logger.debug("Tracking Last Offset %s", record.last_offset)
        logger.debug("Tracking Ref Time %s", record.ref_time)
        logger.debug("Tracking System Time %s", record.current_correction)
        logger.debug("Tracking is remote %s", record.remote)
        logger.debug("Tracking RMS Offset %s", record.rms_offset)
        logger.debug("Tracking Root delay %s", record.root_delay)
        logger.debug("Tracking Root dispersion %s", record.root_dispersion)
        logger.debug("Tracking Frequency %s", record.freq_ppm)
        logger.debug("Tracking Residual Frequency %s", record.resid_freq_ppm)
        logger.debug("Tracking Skew %s", record.skew_ppm)
        logger.debug("Tracking Last Update Interval %s", record.update_interval)
        return metrics.tracking_metrics(record)

    def sources(self, logger, client, resolver):
        reply = client.communicate(n_sources_request())
        n_sources = decode_n_sources(reply)
        logger.debug("Got 'sources' response: %d sources", n_sources)

        # chronyd only hands out sources by index.
        records = []
        for index in range(n_sources):
            logger.debug("Fetching source %d", index)
            try:
                record = decode_source_data(
                    client.communicate(source_data_request(index)), resolver)
                if self.config.collect_ntpdata and record.mode != Chrony.SOURCE_MODE_REF:
                    record.ntpdata = decode_ntp_data(
                        client.communicate(ntp_data_request(record.address)))
            except (ChronyException, OSError):
                logger.debug("Failed to get sourcedata for source %d", index)
                raise
            logger.debug("Source %d: %s (%s) state %s mode %s reach %03o",
                         index, record.address, record.name, record.state_name(),
                         record.mode_name(), record.reachability)
            records.append(record)
        return metrics.sources_metrics(records)

    def serverstats(self, logger, client, resolver):
        reply = client.communicate(server_stats_request())
        logger.debug("Got 'serverstats' response type %d: %s",
                     reply.reply, reply.status_name())
        record = decode_server_stats(reply)
        for name in record.FIELDS:
            logger.debug("Serverstats %s %d", name, getattr(record, name))
        return metrics.serverstats_metrics(record)
