"""
Scrape orchestration tests
"""

import logging
import os
import socket

import pytest
from prometheus_client import CollectorRegistry, generate_latest

from chrony_exporter.collector import ChronyCollector, ExporterConfig, metric_families
from chrony_exporter.protocol import (
    REQ_N_SOURCES,
    REQ_NTP_DATA,
    REQ_SERVER_STATS,
    REQ_SOURCE_DATA,
    REQ_TRACKING,
    RPY_SERVER_STATS3,
)

from fakes import (
    Chronyd,
    FakeDialer,
    ntp_data_payload,
    server_stats_payload,
    source_data_payload,
    tracking_payload,
)


def names(observations):
    return [obs.name for obs in observations]


def value(observations, name):
    matches = [obs.value for obs in observations if obs.name == name]
    assert len(matches) == 1, name
    return matches[0]


def full_daemon(**kwargs):
    return Chronyd(
        tracking=tracking_payload(),
        sources=[
            source_data_payload(ip="192.0.2.1", reach=0o377),
            source_data_payload(ip="192.0.2.2", reach=0o1, poll=10),
            source_data_payload(ip="80.80.83.0", mode=2, stratum=0, poll=4),
        ],
        serverstats=(RPY_SERVER_STATS3, server_stats_payload(
            RPY_SERVER_STATS3, [10, 1, 2, 0, 0, 0, 0, 4, 5, 64, 300])),
        ntpdata=ntp_data_payload(),
        **kwargs,
    )


def collector(dialer, **conf):
    conf.setdefault("dns_lookups", False)
    return ChronyCollector(ExporterConfig(address="[::1]:323", **conf), dial=dialer)


class TestUnreachable:
    """Tests for a daemon that cannot be reached."""

    def test_only_up(self):
        """A failed connect yields exactly one metric, up=0."""
        dialer = FakeDialer(error=ConnectionRefusedError(111, "Connection refused"))
        got = collector(dialer, collect_sources=True, collect_serverstats=True).scrape()
        assert names(got) == ["chrony_up"]
        assert got[0].value == 0.0
        assert dialer.releases == 0

    def test_bad_address(self):
        dialer = FakeDialer(error=ValueError("Invalid port in address: host:x"))
        got = collector(dialer).scrape()
        assert names(got) == ["chrony_up"]
        assert got[0].value == 0.0

    def test_families(self):
        dialer = FakeDialer(error=OSError("unreachable"))
        families = list(collector(dialer).collect())
        assert [f.name for f in families] == ["chrony_up"]
        assert families[0].samples[0].value == 0.0


class TestTrackingOnly:
    """Tests for the default tracking-only scrape."""

    def test_metrics(self, dialer):
        got = collector(dialer).scrape()
        info = [obs for obs in got if obs.name == "chrony_tracking_info"][0]
        assert info.labels["tracking_refid"] == "C0000201"
        assert info.labels["tracking_address"] == "192.0.2.1"
        assert value(got, "chrony_tracking_stratum") == 2.0
        assert value(got, "chrony_tracking_last_offset_seconds") == pytest.approx(0.000123, rel=1e-6)
        assert names(got)[-1] == "chrony_up"
        assert value(got, "chrony_up") == 1.0

    def test_only_tracking_queried(self, dialer, chronyd):
        collector(dialer).scrape()
        assert [command for command, _, _ in chronyd.requests] == [REQ_TRACKING]

    def test_released_once(self, dialer):
        collector(dialer).scrape()
        assert dialer.releases == 1
        assert dialer.conn.closed

    def test_config_passed_to_dial(self, dialer):
        ChronyCollector(ExporterConfig(address="unix:///run/chrony/chronyd.sock",
                                       timeout=0.5, chmod_socket=True,
                                       dns_lookups=False),
                        dial=dialer).scrape()
        assert dialer.calls == [("unix:///run/chrony/chronyd.sock", 0.5, True)]

    def test_nothing_enabled(self, dialer):
        got = collector(dialer, collect_tracking=False).scrape()
        assert names(got) == ["chrony_up"]
        assert got[0].value == 1.0


class TestAllQueries:
    """Tests for scrapes with every query enabled."""

    def test_fan_out(self):
        daemon = full_daemon()
        collector(FakeDialer(daemon), collect_sources=True, collect_serverstats=True).scrape()
        commands = [command for command, _, _ in daemon.requests]
        assert commands == [REQ_TRACKING, REQ_N_SOURCES, REQ_SOURCE_DATA,
                            REQ_SOURCE_DATA, REQ_SOURCE_DATA, REQ_SERVER_STATS]
        sequences = [seq for _, seq, _ in daemon.requests]
        assert sequences == list(range(1, 7))

    def test_metrics(self):
        got = collector(FakeDialer(full_daemon()), collect_sources=True,
                        collect_serverstats=True).scrape()
        assert value(got, "chrony_up") == 1.0
        polls = {obs.labels["source_address"]: obs.value for obs in got
                 if obs.name == "chrony_sources_polling_interval_seconds"}
        assert polls == {"192.0.2.1": 64.0, "192.0.2.2": 1024.0, "80.80.83.0": 16.0}
        names_by_address = {obs.labels["source_address"]: obs.labels["source_name"]
                            for obs in got if obs.name == "chrony_sources_stratum"}
        assert names_by_address["80.80.83.0"] == "PPS"
        assert value(got, "chrony_serverstats_ntp_hits") == 10.0
        assert value(got, "chrony_serverstats_ntp_timestamps_held") == 64.0
        assert value(got, "chrony_serverstats_ntp_hw_rx_timestamps") == 0.0

    def test_ntpdata_skips_reference_clocks(self):
        daemon = full_daemon()
        got = collector(FakeDialer(daemon), collect_tracking=False, collect_sources=True,
                        collect_ntpdata=True).scrape()
        commands = [command for command, _, _ in daemon.requests]
        assert commands.count(REQ_NTP_DATA) == 2
        delays = [obs for obs in got if obs.name == "chrony_sources_ntpdata_peer_delay_seconds"]
        assert {obs.labels["source_address"] for obs in delays} == {"192.0.2.1", "192.0.2.2"}
        assert value(got, "chrony_up") == 1.0

    def test_ntpdata_refused(self):
        """Without NTP data access the sources query fails."""
        daemon = full_daemon()
        daemon.ntpdata = None
        got = collector(FakeDialer(daemon), collect_tracking=False, collect_sources=True,
                        collect_ntpdata=True).scrape()
        assert names(got) == ["chrony_up"]
        assert got[0].value == 0.0


class TestPartialFailure:
    """Tests for queries failing independently."""

    def test_broken_source(self):
        """A failed sourcedata round trip only drops the sources query."""
        dialer = FakeDialer(full_daemon(broken_sources={1}))
        got = collector(dialer, collect_sources=True, collect_serverstats=True).scrape()
        assert not [n for n in names(got) if n.startswith("chrony_sources_")]
        assert value(got, "chrony_tracking_stratum") == 2.0
        assert value(got, "chrony_serverstats_ntp_hits") == 10.0
        assert value(got, "chrony_up") == 0.0
        assert dialer.releases == 1

    def test_failed_tracking(self):
        daemon = full_daemon()
        daemon.tracking = None
        got = collector(FakeDialer(daemon), collect_serverstats=True).scrape()
        assert "chrony_tracking_info" not in names(got)
        assert value(got, "chrony_serverstats_ntp_hits") == 10.0
        assert value(got, "chrony_up") == 0.0

    def test_sequence_mismatch(self):
        dialer = FakeDialer(full_daemon(seq_offset=5))
        got = collector(dialer, collect_sources=True, collect_serverstats=True).scrape()
        assert names(got) == ["chrony_up"]
        assert got[0].value == 0.0
        assert dialer.releases == 1

    def test_unexpected_error_still_releases(self, dialer):
        class Broken(ChronyCollector):
            def tracking(self, logger, client, resolver):
                raise RuntimeError("bug")

        with pytest.raises(RuntimeError):
            Broken(ExporterConfig(), dial=dialer).scrape()
        assert dialer.releases == 1

    def test_bad_reverse_name(self):
        """A broken reverse lookup never fails the scrape."""
        def lookup(address):
            raise UnicodeError("label empty or too long")

        c = ChronyCollector(ExporterConfig(collect_sources=True), dial=FakeDialer(full_daemon()),
                            lookup=lookup)
        got = c.scrape()
        info = [obs for obs in got if obs.name == "chrony_tracking_info"][0]
        assert info.labels["tracking_name"] == "192.0.2.1"
        assert value(got, "chrony_up") == 1.0


class TestLogging:
    """Tests for scrape log context."""

    def test_scrape_ids(self, dialer, caplog):
        c = collector(dialer)
        with caplog.at_level(logging.DEBUG, logger="chrony_exporter"):
            c.scrape()
            c.scrape()
        messages = [r.getMessage() for r in caplog.records if "Scrape starting" in r.getMessage()]
        assert messages == ["scrape_id=1 Scrape starting", "scrape_id=2 Scrape starting"]

    def test_independent_collectors(self, dialer):
        assert collector(dialer).scrape_ids.next() == 1
        assert collector(dialer).scrape_ids.next() == 1

    def test_failures_logged(self, caplog):
        dialer = FakeDialer(full_daemon(broken_sources={0}))
        with caplog.at_level(logging.ERROR, logger="chrony_exporter"):
            collector(dialer, collect_sources=True).scrape()
        assert any("Couldn't get sources" in r.getMessage() for r in caplog.records)


class TestExposition:
    """Tests for the prometheus_client side."""

    def test_generate_latest(self, dialer):
        registry = CollectorRegistry()
        registry.register(collector(dialer))
        text = generate_latest(registry).decode()
        assert "chrony_up 1.0" in text
        assert 'tracking_refid="C0000201"' in text
        assert "chrony_tracking_stratum 2.0" in text

    def test_counters(self):
        """Counters keep their type and are exposed with a _total sample."""
        c = collector(FakeDialer(full_daemon()), collect_tracking=False, collect_serverstats=True)
        families = metric_families(c.scrape())
        hits = [f for f in families if f.name == "chrony_serverstats_ntp_hits"][0]
        assert hits.type == "counter"
        held = [f for f in families if f.name == "chrony_serverstats_ntp_timestamps_held"][0]
        assert held.type == "gauge"
        registry = CollectorRegistry()
        registry.register(c)
        text = generate_latest(registry).decode()
        assert "chrony_serverstats_ntp_hits_total 10.0" in text

    def test_register_does_not_scrape(self, dialer, chronyd):
        CollectorRegistry().register(collector(dialer))
        assert chronyd.requests == []

    def test_families_grouped(self):
        got = collector(FakeDialer(full_daemon()), collect_sources=True).scrape()
        families = metric_families(got)
        ratio = [f for f in families if f.name == "chrony_sources_reachability_ratio"][0]
        assert len(ratio.samples) == 3
        assert families[-1].name == "chrony_up"


@pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="needs unix sockets")
class TestLocalSocket:
    """End-to-end scrapes over a real unix datagram socket."""

    def config(self, path, **kwargs):
        return ExporterConfig(address=f"unix://{path}/chronyd.sock", timeout=1.0,
                              dns_lookups=False, **kwargs)

    def test_scrape(self, short_tmpdir, unix_chronyd):
        unix_chronyd(full_daemon())
        got = ChronyCollector(self.config(short_tmpdir, collect_sources=True)).scrape()
        assert value(got, "chrony_up") == 1.0
        assert value(got, "chrony_tracking_stratum") == 2.0
        assert os.listdir(short_tmpdir) == ["chronyd.sock"]

    def test_failed_scrape_cleans_up(self, short_tmpdir, unix_chronyd):
        unix_chronyd(full_daemon(seq_offset=1))
        got = ChronyCollector(self.config(short_tmpdir)).scrape()
        assert names(got) == ["chrony_up"]
        assert got[0].value == 0.0
        assert os.listdir(short_tmpdir) == ["chronyd.sock"]

    def test_chmod_socket(self, short_tmpdir, unix_chronyd):
        unix_chronyd(full_daemon())
        got = ChronyCollector(self.config(short_tmpdir, chmod_socket=True)).scrape()
        assert value(got, "chrony_up") == 1.0
        assert os.listdir(short_tmpdir) == ["chronyd.sock"]

    def test_no_daemon(self, short_tmpdir):
        got = ChronyCollector(self.config(short_tmpdir)).scrape()
        assert names(got) == ["chrony_up"]
        assert got[0].value == 0.0
        assert os.listdir(short_tmpdir) == []
