import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, push_to_gateway

logger = logging.getLogger(__name__)

# The observatory never listens on a socket, so metrics live in their own
# registry and are pushed to a Pushgateway when one is configured.
REGISTRY = CollectorRegistry()

# Metrics
BLOCK_HEIGHT_GAUGE = Gauge(
    "observatory_block_height",
    "Latest block height imported by the chain monitor",
    ["network"],
    registry=REGISTRY,
)
MISSED_BLOCKS_GAUGE = Gauge(
    "observatory_validator_missed_blocks",
    "Blocks in the tracked window missing the validator's signature",
    ["network"],
    registry=REGISTRY,
)
RECENT_BLOCKS_GAUGE = Gauge(
    "observatory_validator_signed_blocks",
    "Blocks in the tracked window signed by the validator",
    ["network"],
    registry=REGISTRY,
)
CONSENSUS_TIME_GAUGE = Gauge(
    "observatory_consensus_time_seconds",
    "Estimated average block production interval",
    ["network"],
    registry=REGISTRY,
)
BFT_TIME_DELTA_GAUGE = Gauge(
    "observatory_bft_time_delta_seconds",
    "Offset between local wall time and the last imported block time",
    ["network"],
    registry=REGISTRY,
)
RPC_ERRORS_COUNTER = Counter(
    "observatory_rpc_errors_total",
    "RPC requests that failed or timed out",
    ["node", "network", "kind"],  # "timeout" or "error"
    registry=REGISTRY,
)
RESYNC_COUNTER = Counter(
    "observatory_resyncs_total",
    "Number of times a monitor discarded its history after falling behind",
    ["network"],
    registry=REGISTRY,
)
ALARMS_COUNTER = Counter(
    "observatory_alarms_total",
    "Alarms reported to the alert delivery service",
    ["network", "delivered"],  # "true" or "false"
    registry=REGISTRY,
)


def push_metrics(gateway: str, job: str):
    """Push the observatory registry to a Prometheus Pushgateway."""
    try:
        push_to_gateway(gateway, job=job, registry=REGISTRY)
    except OSError as e:
        logger.warning(f"Failed to push metrics to {gateway}: {e}")
