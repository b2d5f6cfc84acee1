"""Map canonical records to metric observations.

Nothing in here does I/O. Every function takes records and returns a list
of Observation tuples; the collector turns those into metric families.
"""

import collections

from .replies import refid_as_hex

NAMESPACE = "chrony"

GAUGE = "gauge"
COUNTER = "counter"

Observation = collections.namedtuple("Observation", "name labels value kind")

SOURCE_LABELS = ("source_address", "source_name")

# name -> (help, kind, label names)
DESCRIPTIONS = {
    "up": ("Whether the chrony server is up.", GAUGE, ()),

    "tracking_info": ("Chrony tracking info", GAUGE,
                      ("tracking_address", "tracking_name", "tracking_refid")),
    "tracking_last_offset_seconds": ("Chrony tracking last offset in seconds", GAUGE, ()),
    "tracking_reference_timestamp_seconds": ("Chrony tracking Reference timestamp", GAUGE, ()),
    "tracking_system_time_seconds": ("Chrony tracking System time", GAUGE, ()),
    "tracking_remote_reference": ("Chrony tracking is connected to a remote source", GAUGE, ()),
    "tracking_rms_offset_seconds": ("Chrony tracking long-term average of the offset", GAUGE, ()),
    "tracking_root_delay_seconds": (
        "This is the total of the network path delays to the stratum-1 computer "
        "from which the computer is ultimately synchronised", GAUGE, ()),
    "tracking_root_dispersion_seconds": (
        "Chrony tracking total of all measurement errors to the NTP root", GAUGE, ()),
    "tracking_frequency_ppms": (
        "Rate by which the system's clock would be wrong if chronyd was not "
        "correcting it, in PPMs", GAUGE, ()),
    "tracking_residual_frequency_ppms": (
        "For the currently selected reference source, the difference between the "
        "frequency it suggests and the one currently in use, in PPMs", GAUGE, ()),
    "tracking_skew_ppms": ("The estimated error bound on the frequency, in PPMs", GAUGE, ()),
    "tracking_update_interval_seconds": (
        "The time elapsed since the last measurement from the reference source "
        "was processed, in seconds", GAUGE, ()),
    "tracking_stratum": ("Chrony tracking client stratum", GAUGE, ()),
    "tracking_leap_status": (
        "Chrony tracking leap status (0 normal, 1 insert second, 2 delete second, "
        "3 not synchronised)", GAUGE, ()),

    "sources_last_sample_age_seconds": (
        "Chrony sources last good sample age in seconds", GAUGE, SOURCE_LABELS),
    "sources_reachability_ratio": (
        "Chrony sources ratio of packet reachability", GAUGE, SOURCE_LABELS),
    "sources_reachability_success": (
        "Chrony sources last poll reachability success", GAUGE, SOURCE_LABELS),
    "sources_last_sample_offset_seconds": (
        "Chrony sources last sample offset in seconds", GAUGE, SOURCE_LABELS),
    "sources_last_sample_error_margin_seconds": (
        "Chrony sources last sample margin of error in seconds", GAUGE, SOURCE_LABELS),
    "sources_polling_interval_seconds": (
        "Chrony sources polling interval in seconds", GAUGE, SOURCE_LABELS),
    "sources_state_info": (
        "Chrony sources state info", GAUGE,
        SOURCE_LABELS + ("source_state", "source_mode")),
    "sources_stratum": ("Chrony sources stratum", GAUGE, SOURCE_LABELS),

    "sources_ntpdata_root_delay_seconds": (
        "Root delay reported by the source", GAUGE, SOURCE_LABELS),
    "sources_ntpdata_root_dispersion_seconds": (
        "Root dispersion reported by the source", GAUGE, SOURCE_LABELS),
    "sources_ntpdata_offset_seconds": (
        "Offset of the last NTP measurement", GAUGE, SOURCE_LABELS),
    "sources_ntpdata_peer_delay_seconds": (
        "Round trip delay of the last NTP measurement", GAUGE, SOURCE_LABELS),
    "sources_ntpdata_peer_dispersion_seconds": (
        "Dispersion of the last NTP measurement", GAUGE, SOURCE_LABELS),
    "sources_ntpdata_response_time_seconds": (
        "Time the source took to respond to the last request", GAUGE, SOURCE_LABELS),
    "sources_ntpdata_jitter_asymmetry": (
        "Estimated asymmetry of network jitter to the source", GAUGE, SOURCE_LABELS),
    "sources_ntpdata_tx_packets": (
        "NTP packets sent to the source", COUNTER, SOURCE_LABELS),
    "sources_ntpdata_rx_packets": (
        "NTP packets received from the source", COUNTER, SOURCE_LABELS),
    "sources_ntpdata_valid_rx_packets": (
        "Valid NTP packets received from the source", COUNTER, SOURCE_LABELS),

    "serverstats_ntp_hits": ("Received NTP packets from allowed senders", COUNTER, ()),
    "serverstats_nke_hits": ("Accepted NTS-KE connections", COUNTER, ()),
    "serverstats_cmd_hits": ("Received command packets", COUNTER, ()),
    "serverstats_ntp_drops": ("Dropped NTP packets", COUNTER, ()),
    "serverstats_nke_drops": ("Dropped NTS-KE connections", COUNTER, ()),
    "serverstats_cmd_drops": ("Dropped command packets", COUNTER, ()),
    "serverstats_log_drops": ("Dropped log entries", COUNTER, ()),
    "serverstats_ntp_auth_hits": ("Authenticated NTP packets", COUNTER, ()),
    "serverstats_ntp_interleaved_hits": ("Interleaved NTP packets", COUNTER, ()),
    "serverstats_ntp_timestamps_held": ("NTP timestamps held", GAUGE, ()),
    "serverstats_ntp_timestamps_span": ("NTP timestamp span", GAUGE, ()),
    "serverstats_ntp_daemon_rx_timestamps": (
        "NTP packets received with a daemon timestamp", COUNTER, ()),
    "serverstats_ntp_daemon_tx_timestamps": (
        "NTP packets sent with a daemon timestamp", COUNTER, ()),
    "serverstats_ntp_kernel_rx_timestamps": (
        "NTP packets received with a kernel timestamp", COUNTER, ()),
    "serverstats_ntp_kernel_tx_timestamps": (
        "NTP packets sent with a kernel timestamp", COUNTER, ()),
    "serverstats_ntp_hw_rx_timestamps": (
        "NTP packets received with a hardware timestamp", COUNTER, ()),
    "serverstats_ntp_hw_tx_timestamps": (
        "NTP packets sent with a hardware timestamp", COUNTER, ()),
}

# record attribute -> metric suffix
SERVERSTATS_METRICS = (
    ("ntp_hits", "ntp_hits"),
    ("nke_hits", "nke_hits"),
    ("cmd_hits", "cmd_hits"),
    ("ntp_drops", "ntp_drops"),
    ("nke_drops", "nke_drops"),
    ("cmd_drops", "cmd_drops"),
    ("log_drops", "log_drops"),
    ("ntp_auth_hits", "ntp_auth_hits"),
    ("ntp_interleaved_hits", "ntp_interleaved_hits"),
    ("ntp_timestamps", "ntp_timestamps_held"),
    ("ntp_span_seconds", "ntp_timestamps_span"),
    ("ntp_daemon_rx_timestamps", "ntp_daemon_rx_timestamps"),
    ("ntp_daemon_tx_timestamps", "ntp_daemon_tx_timestamps"),
    ("ntp_kernel_rx_timestamps", "ntp_kernel_rx_timestamps"),
    ("ntp_kernel_tx_timestamps", "ntp_kernel_tx_timestamps"),
    ("ntp_hw_rx_timestamps", "ntp_hw_rx_timestamps"),
    ("ntp_hw_tx_timestamps", "ntp_hw_tx_timestamps"),
)


def full_name(name):
    return f"{NAMESPACE}_{name}"


def observe(name, value, **labels):
    """Build an Observation for a metric from DESCRIPTIONS."""
    _, kind, labelnames = DESCRIPTIONS[name]
    if set(labels) != set(labelnames):
        raise ValueError(f"{name} takes labels {labelnames}, got {sorted(labels)}")
    return Observation(full_name(name), labels, float(value), kind)


def polling_interval(poll):
    """Expand a log2 poll exponent to seconds."""
    return 2.0 ** poll


def up_metrics(up):
    return [observe("up", up)]


def tracking_metrics(record):
    return [
        observe("tracking_info", 1.0,
                tracking_address=str(record.address),
                tracking_name=record.name,
                tracking_refid=refid_as_hex(record.ref_id)),
        observe("tracking_last_offset_seconds", record.last_offset),
        observe("tracking_reference_timestamp_seconds", record.ref_time),
        observe("tracking_system_time_seconds", record.current_correction),
        observe("tracking_remote_reference", 1.0 if record.remote else 0.0),
        observe("tracking_rms_offset_seconds", record.rms_offset),
        observe("tracking_root_delay_seconds", record.root_delay),
        observe("tracking_root_dispersion_seconds", record.root_dispersion),
        observe("tracking_frequency_ppms", record.freq_ppm),
        observe("tracking_residual_frequency_ppms", record.resid_freq_ppm),
        observe("tracking_skew_ppms", record.skew_ppm),
        observe("tracking_update_interval_seconds", record.update_interval),
        observe("tracking_stratum", record.stratum),
        observe("tracking_leap_status", record.leap_status),
    ]


def source_metrics(record):
    labels = {"source_address": str(record.address), "source_name": record.name}
    observations = [
        observe("sources_last_sample_age_seconds", record.since_sample, **labels),
        observe("sources_reachability_ratio", record.reachability_ratio, **labels),
        observe("sources_reachability_success", record.reachability_success, **labels),
        observe("sources_last_sample_offset_seconds", record.latest_meas, **labels),
        observe("sources_last_sample_error_margin_seconds", record.latest_meas_err, **labels),
        observe("sources_polling_interval_seconds", polling_interval(record.poll), **labels),
        observe("sources_state_info", 1.0,
                source_state=record.state_name(), source_mode=record.mode_name(), **labels),
        observe("sources_stratum", record.stratum, **labels),
    ]
    if record.ntpdata is not None:
        observations.extend(ntpdata_metrics(record.ntpdata, labels))
    return observations


def sources_metrics(records):
    observations = []
    for record in records:
        observations.extend(source_metrics(record))
    return observations


def ntpdata_metrics(record, labels):
    return [
        observe("sources_ntpdata_root_delay_seconds", record.root_delay, **labels),
        observe("sources_ntpdata_root_dispersion_seconds", record.root_dispersion, **labels),
        observe("sources_ntpdata_offset_seconds", record.offset, **labels),
        observe("sources_ntpdata_peer_delay_seconds", record.peer_delay, **labels),
        observe("sources_ntpdata_peer_dispersion_seconds", record.peer_dispersion, **labels),
        observe("sources_ntpdata_response_time_seconds", record.response_time, **labels),
        observe("sources_ntpdata_jitter_asymmetry", record.jitter_asymmetry, **labels),
        observe("sources_ntpdata_tx_packets", record.total_tx_count, **labels),
        observe("sources_ntpdata_rx_packets", record.total_rx_count, **labels),
        observe("sources_ntpdata_valid_rx_packets", record.total_valid_count, **labels),
    ]


def serverstats_metrics(record):
    return [observe(f"serverstats_{suffix}", getattr(record, attr))
            for attr, suffix in SERVERSTATS_METRICS]
