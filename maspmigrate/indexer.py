"""Client for the MASP indexer HTTP API."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any

import requests
from requests.adapters import HTTPAdapter

log = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_REQUESTS = 100
EXPECTED_COMMIT = "38093aca7bc8cd3bb03ef06ce139fe4e672b20ff"
MAX_RETRIES = 10
MAX_JITTER_MS = 50
MAX_BACKOFF = 1.0


class IndexerError(Exception):
    """Raised when the MASP indexer cannot be queried or answers badly."""


def _json_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return base64.b64decode(value, validate=True)
    if isinstance(value, list):
        return bytes(value)
    raise ValueError("byte data must be a base64 string or an array of integers")


@dataclass(frozen=True)
class TransactionSlot:
    """One MASP transaction inside a batch."""

    masp_tx_index: int
    data: bytes = b""


@dataclass(frozen=True)
class Transaction:
    """A transaction batch of a block holding MASP transactions."""

    block_index: int
    batch: list[TransactionSlot] = field(default_factory=list)

    def max_masp_tx_index(self) -> int:
        """Highest MASP tx index in the batch (never below zero)."""
        if not self.batch:
            raise IndexerError("got empty masp transaction batch")
        return max(0, *(slot.masp_tx_index for slot in self.batch))


def _transaction_from_json(obj: Any) -> Transaction:
    if not isinstance(obj, dict):
        raise ValueError("transaction must be a json object")
    slots = [
        TransactionSlot(masp_tx_index=int(s.get("masp_tx_index", 0)), data=_json_bytes(s.get("bytes")))
        for s in obj.get("batch") or []
    ]
    return Transaction(block_index=int(obj.get("block_index", 0)), batch=slots)


def sort_masp_txs(txs: list[Transaction]) -> list[Transaction]:
    """Order transactions by their highest MASP tx index."""
    return sorted(txs, key=Transaction.max_masp_tx_index)


def backoff_delay(retry_counter: int) -> float:
    """Seconds to wait before retry ``retry_counter``: exponential with jitter, capped."""
    millis = (1 << retry_counter) + random.randrange(MAX_JITTER_MS)
    return min(millis / 1000, MAX_BACKOFF)


class MaspIndexerClient:
    """Queries a MASP indexer through its ``/api/v1`` endpoint."""

    def __init__(self, url: str, max_concurrent_requests: int = DEFAULT_MAX_CONCURRENT_REQUESTS):
        if not url.endswith("/api/v1"):
            raise IndexerError(f'the url {json.dumps(url)} does not end with "/api/v1"')
        self.url = url
        self.max_concurrent_requests = max_concurrent_requests
        pool = max(1, max_concurrent_requests)
        self._session = requests.Session()
        adapter = HTTPAdapter(pool_connections=pool, pool_maxsize=pool)
        self._session.mount("http://", adapter)
        self._session.mount("https://", adapter)

    def validate_version(self, invalid_commit_not_err: bool = False) -> None:
        """Check the indexer runs the expected release, or only warn if allowed."""
        commit = self.health()
        if commit == EXPECTED_COMMIT:
            return
        if not invalid_commit_not_err:
            raise IndexerError(
                f"using invalid commit {json.dumps(commit)}, expected {EXPECTED_COMMIT} (1.2.0)"
            )
        log.warning(
            "masp indexer commit does not match release 1.2.0, %s is using %s",
            self.url,
            commit or "<unknown-commit>",
        )

    def health(self) -> str:
        """Return the commit reported by the indexer's health endpoint."""
        try:
            rsp = self._session.get(f"{self.url[:-7]}/health")
        except requests.RequestException as exc:
            raise IndexerError(f"failed to query health endpoint from {self.url}: {exc}") from exc
        try:
            body = rsp.json()
        except ValueError as exc:
            raise IndexerError(
                f"failed to decode health endpoint response from {self.url}: {exc}"
            ) from exc
        if body is None:
            return ""
        commit = body.get("commit", "") if isinstance(body, dict) else None
        if commit is None:
            commit = "" if isinstance(body, dict) else None
        if not isinstance(commit, str):
            raise IndexerError(f"failed to decode health endpoint response from {self.url}")
        return commit

    def block_height(self, height: int) -> list[Transaction]:
        """Fetch the MASP transactions of a block, retrying with backoff."""
        last_error: IndexerError | None = None
        for attempt in range(MAX_RETRIES):
            try:
                txs = self._fetch_block_height(height)
            except IndexerError as exc:
                last_error = exc
            else:
                return sort_masp_txs(txs)
            delay = backoff_delay(attempt)
            log.info(
                "fetch of masp txs of block %d failed, retrying after sleeping for %.3fs",
                height,
                delay,
            )
            time.sleep(delay)
        log.error("exhausted all %d attempts to fetch block %d", MAX_RETRIES, height)
        assert last_error is not None
        raise last_error

    def _fetch_block_height(self, height: int) -> list[Transaction]:
        headers = {
            "Connection": "keep-alive",
            "Keep-Alive": f"timeout=60, max={self.max_concurrent_requests}",
        }
        try:
            rsp = self._session.get(
                f"{self.url}/tx?height={height}&height_offset=0", headers=headers
            )
        except requests.RequestException as exc:
            raise IndexerError(
                f"failed to query block height {height} from {self.url}: {exc}"
            ) from exc
        try:
            body = rsp.json()
            if body is None:
                return []
            if not isinstance(body, dict):
                raise ValueError("response must be a json object")
            return [_transaction_from_json(tx) for tx in body.get("txs") or []]
        except (ValueError, TypeError, AttributeError, binascii.Error) as exc:
            raise IndexerError(
                f"failed to decode transactions from block height {height}: {exc}"
            ) from exc