import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, Iterable, List, TypeVar, Union

from observatory.errors import RpcError
from observatory.metrics import RPC_ERRORS_COUNTER
from observatory.rpc import RpcClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ClientManager:
    """Connection manager which fans requests out to every RPC endpoint of a chain."""

    # Default amount of time to wait for an RPC response, in seconds
    DEFAULT_TIMEOUT = 3.0

    def __init__(
        self,
        urls: Iterable[str],
        chain_id: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        client_factory: Callable[[str, float], RpcClient] = RpcClient,
    ):
        self.chain_id = chain_id
        self.timeout = timeout
        self.clients: Dict[str, RpcClient] = {}
        self.executors: Dict[str, ThreadPoolExecutor] = {}
        # Last request submitted to each endpoint
        self.in_flight: Dict[str, Future] = {}

        for url in urls:
            self.clients[url] = client_factory(url, timeout)
            # A dedicated worker per endpoint: a hung node only ever blocks itself
            self.executors[url] = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"rpc-{chain_id}"
            )

    def request(self, fn: Callable[[RpcClient], T]) -> List[Union[T, RpcError]]:
        """
        Make a parallel request to all RPC clients.

        Returns one outcome per endpoint that answered within the timeout:
        either the response or the ``RpcError`` it raised. Endpoints that
        time out, or are still busy with an earlier request, are logged and
        left out of the result entirely.
        """
        started_at = time.monotonic()
        futures = []
        for url, client in self.clients.items():
            previous = self.in_flight.get(url)
            if previous is not None and not previous.done():
                logger.warning(f"RPC timeout error for {url}: previous request still pending")
                RPC_ERRORS_COUNTER.labels(node=url, network=self.chain_id, kind="timeout").inc()
                continue

            future = self.executors[url].submit(fn, client)
            self.in_flight[url] = future
            futures.append((url, future))

        responses = []
        for url, future in futures:
            remaining = self.timeout - (time.monotonic() - started_at)
            try:
                responses.append(future.result(timeout=max(0.0, remaining)))
            except FutureTimeoutError:
                logger.warning(f"RPC timeout error for {url}: no response after {self.timeout}s")
                RPC_ERRORS_COUNTER.labels(node=url, network=self.chain_id, kind="timeout").inc()
            except RpcError as e:
                responses.append(e)
            except Exception as e:
                # Never let one endpoint's failure escape the fan-out
                responses.append(RpcError(url, f"unexpected error: {e!r}"))

        return responses

    def close(self):
        for executor in self.executors.values():
            executor.shutdown(wait=False)
        for client in self.clients.values():
            client.close()
