"""Minimal CometBFT RPC client for the two block queries the monitor needs."""

import logging
from datetime import datetime
from typing import List, NamedTuple, Optional

import requests
from dateutil import parser

from observatory.errors import RpcError, RpcResponseError

logger = logging.getLogger(__name__)

# CometBFT BlockIDFlag values
BLOCK_ID_FLAG_ABSENT = 1


class Block(NamedTuple):
    """The parts of a block header and commit the monitor relies on."""

    chain_id: str
    height: int
    time: datetime
    # None when the block carries no commit (e.g. the first block of a chain).
    # Otherwise one entry per validator slot: the signer's address, or None
    # when the validator's vote is absent.
    last_commit: Optional[List[Optional[bytes]]] = None


class BlockResponse(NamedTuple):
    block_id: str
    block: Block


def parse_time(value: str) -> datetime:
    """Parse an RFC 3339 block time (nanoseconds are truncated to micros)."""
    return parser.isoparse(value)


def parse_block_response(result: dict) -> BlockResponse:
    """Convert the ``result`` member of a ``/block`` response."""
    block_id = result["block_id"]["hash"]
    block = result["block"]
    header = block["header"]

    last_commit = None
    commit = block.get("last_commit")
    if commit and int(commit.get("height", 0)) > 0:
        last_commit = []
        for sig in commit.get("signatures") or []:
            address = sig.get("validator_address")
            if sig.get("block_id_flag") == BLOCK_ID_FLAG_ABSENT or not address:
                last_commit.append(None)
            else:
                last_commit.append(bytes.fromhex(address))

    return BlockResponse(
        block_id=block_id,
        block=Block(
            chain_id=header["chain_id"],
            height=int(header["height"]),
            time=parse_time(header["time"]),
            last_commit=last_commit,
        ),
    )


class RpcClient:
    """HTTP client for a single CometBFT RPC endpoint."""

    def __init__(self, url: str, timeout: float = 3):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def latest_block(self) -> BlockResponse:
        return self._get_block({})

    def block(self, height: int) -> BlockResponse:
        return self._get_block({"height": str(height)})

    def close(self):
        self.session.close()

    def _get_block(self, params: dict) -> BlockResponse:
        try:
            resp = self.session.get(
                f"{self.url}/block", params=params, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise RpcError(self.url, str(e)) from e

        try:
            payload = resp.json()
        except ValueError as e:
            raise RpcError(
                self.url, f"HTTP {resp.status_code}: failed to parse JSON: {e}"
            ) from e

        # Nodes answer unknown heights with a JSON-RPC error and an HTTP 500,
        # so the error object has to be checked before the status code.
        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise RpcResponseError(
                self.url,
                error.get("code", 0),
                error.get("message", ""),
                error.get("data", ""),
            )

        if resp.status_code >= 400:
            raise RpcError(self.url, f"HTTP {resp.status_code} {resp.reason}")

        try:
            return parse_block_response(payload["result"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise RpcError(self.url, f"invalid block response: {e!r}") from e
