import base64
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from algosdk import account, mnemonic, transaction
from algosdk.error import AlgodHTTPError, IndexerHTTPError
from algosdk.v2client import algod, indexer

from errors import AlreadyWhitelisted, LedgerError, LedgerSubmissionFailed, LedgerTimeout, LedgerUnavailable
from smart_contract import STATUS_ACTIVE, STATUS_ENDED, VOTE_EVENT_PREFIX

logger = logging.getLogger(__name__)

_EVENT_PREFIX = VOTE_EVENT_PREFIX.encode("utf-8")
_ADDRESS_BYTES = 20


@dataclass(frozen=True)
class LedgerTx:
    tx_id: str
    confirmed_round: int | None = None


@dataclass(frozen=True)
class VoteEvent:
    election_id: int
    post_id: int
    candidate_ledger_id: str
    voter_address: str
    tx_id: str | None = None
    confirmed_round: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "election_id": self.election_id,
            "post_id": self.post_id,
            "candidate_ledger_id": self.candidate_ledger_id,
            "voter_address": self.voter_address,
            "transaction_hash": self.tx_id,
            "confirmed_round": self.confirmed_round,
        }


def wait_for_confirmation(client, tx_id: str, timeout_rounds: int) -> dict[str, Any]:
    """Block until `tx_id` is confirmed or `timeout_rounds` rounds have passed."""
    start_round = client.status()["last-round"] + 1
    current_round = start_round
    while current_round < start_round + timeout_rounds:
        pending_txn = client.pending_transaction_info(tx_id)
        confirmed_round = pending_txn.get("confirmed-round", 0)
        if confirmed_round > 0:
            return pending_txn
        pool_error = pending_txn.get("pool-error")
        if pool_error:
            raise RuntimeError(f"Transaction rejected: {pool_error}")
        client.status_after_block(current_round)
        current_round += 1
    raise TimeoutError(f"Transaction not confirmed after {timeout_rounds} rounds")


def address_to_bytes(address: str) -> bytes:
    raw = address.strip().lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    try:
        value = bytes.fromhex(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid wallet address: {address}") from exc
    if len(value) != _ADDRESS_BYTES:
        raise ValueError(f"Invalid wallet address: {address}")
    return value


def encode_vote_event(election_id: int, post_id: int, voter_address: str, candidate_ledger_id: str) -> bytes:
    return (
        _EVENT_PREFIX
        + int(election_id).to_bytes(8, "big")
        + int(post_id).to_bytes(8, "big")
        + address_to_bytes(voter_address)
        + candidate_ledger_id.encode("utf-8")
    )


def decode_vote_event(raw: bytes, tx_id: str | None = None, confirmed_round: int | None = None) -> VoteEvent | None:
    if not raw.startswith(_EVENT_PREFIX):
        return None
    body = raw[len(_EVENT_PREFIX):]
    if len(body) <= 16 + _ADDRESS_BYTES:
        return None
    return VoteEvent(
        election_id=int.from_bytes(body[0:8], "big"),
        post_id=int.from_bytes(body[8:16], "big"),
        voter_address="0x" + body[16:36].hex(),
        candidate_ledger_id=body[36:].decode("utf-8", errors="replace"),
        tx_id=tx_id,
        confirmed_round=confirmed_round,
    )


class LedgerClient(ABC):
    """Capabilities the coordinator needs from the vote ledger."""

    @abstractmethod
    def submit_election(self, election_id: int, title: str, description: str, start: int, end: int) -> LedgerTx: ...

    @abstractmethod
    def submit_post(self, election_id: int, post_id: int, name: str, max_votes: int) -> LedgerTx: ...

    @abstractmethod
    def submit_candidate(self, election_id: int, post_id: int, candidate_ledger_id: str, name: str) -> LedgerTx: ...

    @abstractmethod
    def global_whitelist(self, address: str) -> LedgerTx:
        """Raises AlreadyWhitelisted when the address is already eligible."""

    @abstractmethod
    def is_whitelisted(self, address: str) -> bool: ...

    @abstractmethod
    def get_election_status(self, election_id: int) -> int | None:
        """STATUS_PENDING, STATUS_ACTIVE or STATUS_ENDED; None when the election is unknown."""

    @abstractmethod
    def start_voting(self, election_id: int) -> LedgerTx: ...

    @abstractmethod
    def end_voting(self, election_id: int) -> LedgerTx: ...

    @abstractmethod
    def submit_vote(self, election_id: int, post_id: int, candidate_ledger_id: str, voter_address: str) -> LedgerTx: ...

    @abstractmethod
    def get_vote_event_by_tx(self, tx_id: str) -> VoteEvent | None: ...

    @abstractmethod
    def get_tally(self, election_id: int, candidate_ledger_id: str) -> int: ...

    @abstractmethod
    def has_voted(self, election_id: int, voter_address: str) -> bool: ...

    @abstractmethod
    def query_vote_events(self, election_id: int) -> list[VoteEvent]: ...

    def health(self) -> dict[str, Any]:
        return {"status": "ready"}


class AlgorandLedgerClient(LedgerClient):
    """Ledger adapter for the VoteX application deployed on Algorand.

    All writes are application calls signed by the service account; reads go
    through box lookups on algod and, for history, the indexer.
    """

    def __init__(
        self,
        algod_client: algod.AlgodClient,
        private_key: str,
        app_id: int,
        indexer_client: indexer.IndexerClient | None = None,
        timeout_rounds: int = 12,
    ) -> None:
        if app_id <= 0:
            raise RuntimeError("ALGORAND_APP_ID must be set to a deployed application id")
        self.algod = algod_client
        self.indexer = indexer_client
        self.app_id = app_id
        self.private_key = private_key
        self.sender = account.address_from_private_key(private_key)
        self.timeout_rounds = timeout_rounds

    @classmethod
    def from_settings(cls, settings) -> "AlgorandLedgerClient":
        settings.require_ledger()
        headers = {"X-API-Key": settings.algod_token} if settings.algod_token else {}
        algod_client = algod.AlgodClient(settings.algod_token, settings.algod_address, headers=headers)
        indexer_client = None
        if settings.indexer_address:
            indexer_headers = {"X-API-Key": settings.indexer_token} if settings.indexer_token else {}
            indexer_client = indexer.IndexerClient(
                settings.indexer_token, settings.indexer_address, headers=indexer_headers
            )
        return cls(
            algod_client,
            mnemonic.to_private_key(settings.service_mnemonic),
            settings.app_id,
            indexer_client=indexer_client,
            timeout_rounds=settings.tx_timeout_rounds,
        )

    @staticmethod
    def _u64(value: int) -> bytes:
        return int(value).to_bytes(8, "big")

    @classmethod
    def _election_key(cls, election_id: int) -> bytes:
        return b"el_" + cls._u64(election_id)

    @classmethod
    def _post_key(cls, election_id: int, post_id: int) -> bytes:
        return b"po_" + cls._u64(election_id) + cls._u64(post_id)

    @classmethod
    def _candidate_key(cls, election_id: int, candidate_ledger_id: str) -> bytes:
        return b"ca_" + cls._u64(election_id) + hashlib.sha256(candidate_ledger_id.encode("utf-8")).digest()

    @staticmethod
    def _whitelist_key(address: str) -> bytes:
        return b"wl_" + address_to_bytes(address)

    @classmethod
    def _post_vote_key(cls, election_id: int, post_id: int, address: str) -> bytes:
        return b"vp_" + cls._u64(election_id) + cls._u64(post_id) + address_to_bytes(address)

    @classmethod
    def _election_vote_key(cls, election_id: int, address: str) -> bytes:
        return b"ve_" + cls._u64(election_id) + address_to_bytes(address)

    def _call(self, app_args: list[bytes], boxes: list[bytes]) -> LedgerTx:
        method = app_args[0].decode("utf-8")
        try:
            sp = self.algod.suggested_params()
            txn = transaction.ApplicationNoOpTxn(
                sender=self.sender,
                sp=sp,
                index=self.app_id,
                app_args=app_args,
                boxes=[(self.app_id, key) for key in boxes],
            )
            signed = txn.sign(self.private_key)
            tx_id = self.algod.send_transaction(signed)
            pending = wait_for_confirmation(self.algod, tx_id, self.timeout_rounds)
        except TimeoutError as exc:
            logger.error("Ledger call %s timed out: %s", method, exc)
            raise LedgerTimeout(f"Ledger call {method} was not confirmed in time") from exc
        except (AlgodHTTPError, RuntimeError, OSError) as exc:
            logger.error("Ledger call %s failed: %s", method, exc)
            raise LedgerSubmissionFailed(f"Ledger call {method} failed: {exc}") from exc
        confirmed_round = int(pending.get("confirmed-round", 0))
        logger.info("Ledger call %s confirmed in round %s (tx %s)", method, confirmed_round, tx_id)
        return LedgerTx(tx_id=tx_id, confirmed_round=confirmed_round)

    def _read_box(self, key: bytes) -> bytes | None:
        try:
            response = self.algod.application_box_by_name(self.app_id, key)
        except AlgodHTTPError as exc:
            if getattr(exc, "code", None) == 404:
                return None
            raise LedgerError(f"Ledger read failed: {exc}") from exc
        except OSError as exc:
            raise LedgerError(f"Ledger read failed: {exc}") from exc
        return base64.b64decode(response.get("value", ""))

    def submit_election(self, election_id: int, title: str, description: str, start: int, end: int) -> LedgerTx:
        return self._call(
            [
                b"create_election",
                self._u64(election_id),
                title.encode("utf-8"),
                (description or "").encode("utf-8"),
                self._u64(start),
                self._u64(end),
            ],
            [self._election_key(election_id)],
        )

    def submit_post(self, election_id: int, post_id: int, name: str, max_votes: int) -> LedgerTx:
        return self._call(
            [b"create_post", self._u64(election_id), self._u64(post_id), name.encode("utf-8"), self._u64(max_votes)],
            [self._election_key(election_id), self._post_key(election_id, post_id)],
        )

    def submit_candidate(self, election_id: int, post_id: int, candidate_ledger_id: str, name: str) -> LedgerTx:
        return self._call(
            [
                b"add_candidate",
                self._u64(election_id),
                self._u64(post_id),
                candidate_ledger_id.encode("utf-8"),
                name.encode("utf-8"),
            ],
            [
                self._election_key(election_id),
                self._post_key(election_id, post_id),
                self._candidate_key(election_id, candidate_ledger_id),
            ],
        )

    def is_whitelisted(self, address: str) -> bool:
        return self._read_box(self._whitelist_key(address)) is not None

    def global_whitelist(self, address: str) -> LedgerTx:
        if self.is_whitelisted(address):
            raise AlreadyWhitelisted(f"{address} is already whitelisted")
        return self._call([b"whitelist", address_to_bytes(address)], [self._whitelist_key(address)])

    def get_election_status(self, election_id: int) -> int | None:
        value = self._read_box(self._election_key(election_id))
        if value is None:
            return None
        return int.from_bytes(value[0:8], "big")

    def start_voting(self, election_id: int) -> LedgerTx:
        return self._call([b"start_voting", self._u64(election_id)], [self._election_key(election_id)])

    def end_voting(self, election_id: int) -> LedgerTx:
        return self._call([b"end_voting", self._u64(election_id)], [self._election_key(election_id)])

    def submit_vote(self, election_id: int, post_id: int, candidate_ledger_id: str, voter_address: str) -> LedgerTx:
        return self._call(
            [
                b"vote",
                self._u64(election_id),
                self._u64(post_id),
                candidate_ledger_id.encode("utf-8"),
                address_to_bytes(voter_address),
            ],
            [
                self._election_key(election_id),
                self._whitelist_key(voter_address),
                self._candidate_key(election_id, candidate_ledger_id),
                self._post_vote_key(election_id, post_id, voter_address),
                self._election_vote_key(election_id, voter_address),
            ],
        )

    def _lookup_tx(self, tx_id: str) -> dict[str, Any]:
        if self.indexer:
            try:
                resp = self.indexer.search_transactions(txid=tx_id)
            except (IndexerHTTPError, OSError) as exc:
                logger.warning("Indexer lookup for %s failed, falling back to algod: %s", tx_id, exc)
            else:
                txns = resp.get("transactions", [])
                if txns:
                    return txns[0]
        try:
            pending = self.algod.pending_transaction_info(tx_id)
        except (AlgodHTTPError, OSError) as exc:
            raise LedgerError(f"Transaction {tx_id} lookup failed: {exc}") from exc
        if pending:
            return pending
        raise LedgerError(f"Transaction {tx_id} not found on configured clients")

    @staticmethod
    def _events_from_tx(tx: dict[str, Any], tx_id: str | None) -> list[VoteEvent]:
        confirmed_round = int(tx.get("confirmed-round", 0)) or None
        events = []
        for entry in tx.get("logs", []) or []:
            event = decode_vote_event(base64.b64decode(entry), tx_id=tx_id, confirmed_round=confirmed_round)
            if event is not None:
                events.append(event)
        return events

    def get_vote_event_by_tx(self, tx_id: str) -> VoteEvent | None:
        tx = self._lookup_tx(tx_id)
        events = self._events_from_tx(tx, tx_id)
        return events[0] if events else None

    def get_tally(self, election_id: int, candidate_ledger_id: str) -> int:
        value = self._read_box(self._candidate_key(election_id, candidate_ledger_id))
        if value is None:
            logger.warning("Candidate %s has no tally box in election %s", candidate_ledger_id, election_id)
            return 0
        return int.from_bytes(value[8:16], "big")

    def has_voted(self, election_id: int, voter_address: str) -> bool:
        return self._read_box(self._election_vote_key(election_id, voter_address)) is not None

    def query_vote_events(self, election_id: int) -> list[VoteEvent]:
        if self.indexer is None:
            raise LedgerUnavailable("Vote history requires ALGORAND_INDEXER_ADDRESS")
        events: list[VoteEvent] = []
        next_page = None
        while True:
            try:
                resp = self.indexer.search_transactions(application_id=self.app_id, next_page=next_page)
            except (IndexerHTTPError, OSError) as exc:
                raise LedgerError(f"Vote history query failed: {exc}") from exc
            for tx in resp.get("transactions", []):
                events.extend(e for e in self._events_from_tx(tx, tx.get("id")) if e.election_id == election_id)
            next_page = resp.get("next-token")
            if not next_page or not resp.get("transactions"):
                break
        return events

    def health(self) -> dict[str, Any]:
        try:
            status = self.algod.status()
        except (AlgodHTTPError, OSError) as exc:
            return {"status": "unavailable", "error": str(exc)}
        return {"status": "ready", "last_round": status.get("last-round"), "app_id": self.app_id}
