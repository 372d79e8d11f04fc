import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from observatory.chain_state import ChainState
from observatory.client_manager import ClientManager
from observatory.errors import ChainIdMismatch, RpcError, RpcResponseError
from observatory.metrics import (
    BFT_TIME_DELTA_GAUGE,
    BLOCK_HEIGHT_GAUGE,
    CONSENSUS_TIME_GAUGE,
    MISSED_BLOCKS_GAUGE,
    RECENT_BLOCKS_GAUGE,
    RESYNC_COUNTER,
    RPC_ERRORS_COUNTER,
)
from observatory.pager import PagerClient
from observatory.rpc import BlockResponse

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def block_height_with_commas(height: int) -> str:
    """Format block heights with thousands separators for log lines."""
    return f"{height:,}"


class ChainMonitor:
    """
    Chain monitor which tracks current state.

    Polls a chain's RPC endpoints for each new block as close as possible to
    the moment it is produced. The expected arrival time is predicted from the
    chain's recent cadence and shifted by the delay we observed between the
    block's own timestamp and the time we fetched it (the BFT time delta).
    """

    def __init__(
        self,
        chain_id: str,
        client_manager: ClientManager,
        history_size: int = ChainState.DEFAULT_HISTORY_SIZE,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], bool]] = None,
    ):
        self.chain_state = ChainState(chain_id, history_size)
        self.client_manager = client_manager
        self.stop_event = stop_event or threading.Event()
        # Returns True when the monitor has been asked to stop
        self.sleep = sleep or self.stop_event.wait

        # Latest known block height
        self.block_height = 0

        # Offset between the last wall time and the last block time
        self.bft_time_delta = timedelta(0)

    @property
    def chain_id(self) -> str:
        return self.chain_state.chain_id

    def initialize(self) -> bool:
        """
        Seed the chain state with the latest block reported by the endpoints.

        Retries until at least one endpoint answers. Raises ChainIdMismatch if
        any endpoint serves a different chain. Returns False if stopped first.
        """
        while True:
            responses = self._successful(self.fetch_latest_blocks())
            if responses:
                break

            logger.warning(f"[{self.chain_id}] no RPC endpoint returned the latest block; retrying")
            if self.sleep(ChainState.MIN_CONSENSUS_TIME.total_seconds()):
                return False

        for response in responses:
            chain_id = response.block.chain_id
            if chain_id != self.chain_id:
                raise ChainIdMismatch(self.chain_id, chain_id)

            if response.block.height > self.block_height:
                self.block_height = response.block.height

        for response in responses:
            if response.block.height == self.block_height:
                self.chain_state.import_block(response.block_id, response.block)

        logger.info(
            f"[{self.chain_id}] initialized at height {block_height_with_commas(self.block_height)}"
        )
        self._update_metrics()
        return True

    def fetch_next_block(self) -> bool:
        """
        Wait for and import the block following the current height.

        Returns True once a new block has been imported, or False if the
        monitor was stopped while waiting.
        """
        if self.block_height % self.chain_state.history_size == 0:
            self.check_latest_blocks()

        started_at = utcnow()
        next_height = self.block_height + 1
        next_block_time = self.chain_state.next_block_time() + self.bft_time_delta

        while True:
            remaining = next_block_time - utcnow()
            if remaining <= timedelta(0):
                remaining = ChainState.MIN_CONSENSUS_TIME
            sleep_duration = self.adjusted_sleep_duration(remaining)

            logger.debug(
                f"[{self.chain_id}] polling block {next_height} in {sleep_duration.total_seconds():.3f}s"
            )

            if self.sleep(sleep_duration.total_seconds()):
                return False

            results = self.client_manager.request(lambda client: client.block(next_height))

            for response in self._successful(results):
                now = utcnow()
                bft_time_delta = max(now - response.block.time, timedelta(0))

                if self.chain_state.import_block(response.block_id, response.block):
                    self.block_height = next_height
                    self.bft_time_delta = bft_time_delta

                    duration = (now - started_at).total_seconds()
                    logger.info(
                        f"[{self.chain_id}] imported block {block_height_with_commas(next_height)} "
                        f"[{response.block_id[:10]}] ({duration:.3f} secs)"
                    )
                    self._update_metrics()
                    return True

    def check_latest_blocks(self):
        """
        Check if the state buffer is lagging too far behind the latest block
        height and if so, purge it and start over.
        """
        responses = self._successful(self.fetch_latest_blocks())

        latest_block_height = self.block_height
        for response in responses:
            if response.block.height > latest_block_height:
                latest_block_height = response.block.height

        delta = latest_block_height - self.block_height

        if delta > self.chain_state.history_size:
            logger.warning(
                f"[{self.chain_id}] monitor is {delta} blocks behind chain! Clearing history"
            )
            RESYNC_COUNTER.labels(network=self.chain_id).inc()

            self.chain_state.clear()
            self.block_height = latest_block_height

            for response in responses:
                if response.block.height == latest_block_height:
                    self.chain_state.import_block(response.block_id, response.block)

            self._update_metrics()

    def fetch_latest_blocks(self) -> List:
        """Fetch the latest block from every endpoint."""
        return self.client_manager.request(lambda client: client.latest_block())

    def adjusted_sleep_duration(self, duration: timedelta) -> timedelta:
        """
        Adjust a computed sleep duration based on our current computed offset
        between our local wall time and the chain's BFT time.
        """
        # To avoid spurious requests the target offset is slightly longer than
        # the chain's consensus time
        target_offset = self.chain_state.consensus_time() * 1.5

        # How much larger the actual offset is than the idealized one
        divisor = (self.bft_time_delta / timedelta(milliseconds=1)) / (
            target_offset / timedelta(milliseconds=1)
        )

        # Grow the divisor quadratically with the offset
        divisor *= divisor

        # Only ever shorten the sleep, never lengthen it
        if divisor < 1.0:
            divisor = 1.0

        return duration / divisor

    def missed_blocks(self, validator_addr: bytes) -> int:
        """Get the count of missed blocks for the given consensus key ID."""
        return self.chain_state.missed_blocks(validator_addr)

    def recent_blocks(self, validator_addr: bytes) -> int:
        """Get the count of recent blocks for the given consensus key ID."""
        return self.chain_state.recent_blocks(validator_addr)

    def _successful(self, results) -> List[BlockResponse]:
        """Split fan-out results, logging the failures."""
        responses = []
        for result in results:
            if isinstance(result, RpcResponseError):
                # Returned for unknown blocks, which are expected when a new
                # block hasn't been created yet
                logger.debug(f"[{self.chain_id}] {result}")
            elif isinstance(result, RpcError):
                logger.warning(f"[{self.chain_id}] RPC error: {result}")
                RPC_ERRORS_COUNTER.labels(node=result.url, network=self.chain_id, kind="error").inc()
            else:
                responses.append(result)
        return responses

    def _update_metrics(self):
        BLOCK_HEIGHT_GAUGE.labels(network=self.chain_id).set(self.block_height)
        CONSENSUS_TIME_GAUGE.labels(network=self.chain_id).set(
            self.chain_state.consensus_time().total_seconds()
        )
        BFT_TIME_DELTA_GAUGE.labels(network=self.chain_id).set(self.bft_time_delta.total_seconds())


def run_monitor(
    chain_id: str,
    validator_addr: bytes,
    client_manager: ClientManager,
    pager: PagerClient,
    history_size: int = ChainState.DEFAULT_HISTORY_SIZE,
    stop_event: Optional[threading.Event] = None,
):
    """
    Monitor a chain forever, reporting the validator's signing record to the
    pager after every imported block.

    ChainIdMismatch and PagerUnavailable propagate to the caller.
    """
    logger.info(f"[{chain_id}] monitoring signatures from {validator_addr.hex().upper()}")

    monitor = ChainMonitor(chain_id, client_manager, history_size, stop_event)
    if not monitor.initialize():
        return

    while monitor.fetch_next_block():
        missed_blocks = monitor.missed_blocks(validator_addr)
        recent_blocks = monitor.recent_blocks(validator_addr)

        MISSED_BLOCKS_GAUGE.labels(network=chain_id).set(missed_blocks)
        RECENT_BLOCKS_GAUGE.labels(network=chain_id).set(recent_blocks)

        latest = monitor.chain_state.latest_block()
        if latest is not None and latest.signed_by(validator_addr) is False:
            logger.warning(
                f"[{chain_id}] block {block_height_with_commas(latest.height)} commit lacks our signature "
                f"({missed_blocks} missed in the last {len(monitor.chain_state)} blocks)"
            )

        pager.send_event(chain_id, missed_blocks, recent_blocks)
