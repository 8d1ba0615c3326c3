import logging
import time
from datetime import datetime
from typing import Any

from errors import (
    AlreadyVoted,
    BadRequest,
    Conflict,
    InvalidState,
    InvalidTransition,
    LedgerError,
    LedgerSubmissionFailed,
    NotFound,
    OffchainSyncFailed,
    VoteRecordingFailed,
    VoteXError,
)
from ledger_client import STATUS_ACTIVE, STATUS_ENDED, LedgerClient, VoteEvent
from models import (
    GENDERS,
    NEEDS_REVIEW,
    VERIFIED,
    ActivateElection,
    Candidate,
    Election,
    FinalizeElection,
    Post,
    VoteLog,
    VoterReceipt,
    normalize_wallet,
)

logger = logging.getLogger(__name__)

MIN_VOTER_AGE = 18


def parse_age_range(raw: str | None) -> tuple[int, int] | None:
    """Parse ``"min-max"`` into an inclusive range; anything unparsable is ignored."""
    if not raw:
        return None
    parts = str(raw).split("-")
    if len(parts) != 2:
        return None
    try:
        low, high = int(parts[0].strip()), int(parts[1].strip())
    except ValueError:
        return None
    return low, high


def pick_winner(candidates: list[Candidate], tallies: dict[str, int]) -> int | None:
    """Candidate with the strictly highest tally; ties go to the first one seen.

    ``candidates`` comes ordered by ascending id, so a tie resolves to the
    lowest candidate id.
    """
    winner_id = None
    best = -1
    for candidate in candidates:
        votes = tallies.get(candidate.blockchain_candidate_id, 0)
        if votes > best:
            best = votes
            winner_id = candidate.id
    return winner_id


def _as_int(value: Any, name: str) -> int:
    if value is None or value == "":
        raise BadRequest(f"{name} is required")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise BadRequest(f"{name} must be an integer") from exc


class VoteCoordinator:
    """Orchestrates election lifecycle and vote casting across store and ledger."""

    def __init__(self, store, ledger: LedgerClient, explorer_tx_url: str = "", ledger_app_id: int | None = None) -> None:
        self.store = store
        self.ledger = ledger
        self.explorer_tx_url = explorer_tx_url
        self.ledger_app_id = ledger_app_id

    # --- loaders ---

    def _election(self, election_id: int) -> Election:
        election = self.store.get_election(election_id)
        if not election:
            raise NotFound("Election not found.")
        return election

    def _post(self, post_id: int) -> Post:
        post = self.store.get_post(post_id)
        if not post:
            raise NotFound("Post not found.")
        return post

    def _display_name(self, candidate: Candidate) -> str:
        member = self.store.get_party_member(candidate.party_member_id)
        return member.name if member else candidate.blockchain_candidate_id

    def _alert(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.critical("%s: %s", event_type, payload)
        try:
            self.store.record_audit_event(event_type, "CRITICAL", payload)
        except Exception:  # noqa: BLE001
            logger.exception("Could not persist audit event %s", event_type)

    # --- admin setup ---

    def register_voter(
        self,
        email: str,
        name: str,
        age: Any,
        gender: str,
        national_id_number: str | None = None,
    ):
        if not email or not name or age is None or not gender:
            raise BadRequest("Missing required voter fields (email, name, age, gender).")
        if gender not in GENDERS:
            raise BadRequest("Invalid gender. Must be Male, Female, or Other.")
        if isinstance(age, bool) or not isinstance(age, int) or age < MIN_VOTER_AGE:
            raise BadRequest("Age must be a number and 18 or older.")
        if self.store.get_voter_by_email(email):
            raise Conflict("Voter with this email already registered.")
        voter = self.store.create_voter(email, name, age, gender, national_id_number or None)
        logger.info("Registered voter %s", voter.id)
        return voter

    def create_election(self, title: str, description: str, start_date: datetime, end_date: datetime) -> Election:
        if not title or not start_date or not end_date:
            raise BadRequest("Missing required election fields.")
        if end_date <= start_date:
            raise BadRequest("End date must be after start date.")
        election = self.store.create_election(title, description, start_date, end_date, self.ledger_app_id)
        # the row exists before the ledger call so the ledger can be keyed by its id
        try:
            tx = self.ledger.submit_election(
                election.id, title, description or "", int(start_date.timestamp()), int(end_date.timestamp())
            )
        except LedgerError:
            self.store.delete_election(election.id)
            raise
        logger.info("Election %s submitted to ledger in %s", election.id, tx.tx_id)
        return election

    def create_post(self, election_id: int, name: str, max_votes_per_voter: Any = 1) -> Post:
        if not name:
            raise BadRequest("Post name and election ID are required.")
        max_votes = _as_int(max_votes_per_voter or 1, "maxVotesPerVoter")
        if max_votes < 1:
            raise BadRequest("maxVotesPerVoter must be at least 1")
        election = self._election(election_id)
        if election.status != "pending":
            raise InvalidState(f"Posts can only be added to pending elections (election is {election.status}).")
        post = self.store.create_post(election.id, name, max_votes)
        try:
            tx = self.ledger.submit_post(election.id, post.id, name, max_votes)
        except LedgerError:
            self.store.delete_post(post.id)
            raise
        logger.info("Post %s submitted to ledger in %s", post.id, tx.tx_id)
        return post

    def add_candidate(self, post_id: int, party_member_id: Any, blockchain_candidate_id: str | None = None) -> Candidate:
        member_id = _as_int(party_member_id, "partyMemberId")
        post = self._post(post_id)
        election = self._election(post.election_id)
        if election.status != "pending":
            raise InvalidState(f"Candidates can only be added to pending elections (election is {election.status}).")
        member = self.store.get_party_member(member_id)
        if not member:
            raise NotFound("Party member not found.")
        ledger_id = blockchain_candidate_id or f"candidate_{member_id}_{int(time.time() * 1000)}"
        candidate = self.store.create_candidate(post.id, post.election_id, member_id, ledger_id)
        try:
            tx = self.ledger.submit_candidate(post.election_id, post.id, ledger_id, member.name)
        except LedgerError:
            self.store.delete_candidate(candidate.id)
            raise
        logger.info("Candidate %s (%s) submitted to ledger in %s", candidate.id, ledger_id, tx.tx_id)
        return candidate

    # --- lifecycle ---

    def start_election(self, election_id: int) -> Election:
        election = self._election(election_id)
        if election.status != "pending":
            raise InvalidTransition(f"Election is already {election.status}. Cannot start.")
        tx_id = None
        # a previous attempt may have activated the ledger side already
        if self.ledger.get_election_status(election.id) != STATUS_ACTIVE:
            tx_id = self.ledger.start_voting(election.id).tx_id
        else:
            logger.warning("Election %s already active on the ledger; syncing off-chain status", election.id)
        election = self._sync(tx_id, self.store.update_election, election.id, ActivateElection())
        logger.info("Election %s started (tx %s)", election.id, tx_id)
        return election

    def end_election(self, election_id: int) -> dict[str, Any]:
        election = self._election(election_id)
        if election.status != "active":
            raise InvalidTransition(f"Election is not active. Current status: {election.status}.")
        tx_id = None
        if self.ledger.get_election_status(election.id) != STATUS_ENDED:
            tx_id = self.ledger.end_voting(election.id).tx_id
        else:
            logger.warning("Election %s already ended on the ledger; finalizing off-chain", election.id)

        candidates = self._sync(tx_id, self.store.list_candidates_for_election, election.id)
        tallies = self._sync(tx_id, self._read_tallies, election.id, candidates)
        winner_id = pick_winner(candidates, tallies)
        election = self._sync(tx_id, self.store.update_election, election.id, FinalizeElection(tallies, winner_id))
        logger.info("Election %s ended (tx %s), winner candidate %s", election.id, tx_id, winner_id)
        return {
            "election": election.to_dict(),
            "results": tallies,
            "winning_candidate_id": winner_id,
            "transaction_hash": tx_id,
        }

    def _read_tallies(self, election_id: int, candidates: list[Candidate]) -> dict[str, int]:
        return {c.blockchain_candidate_id: self.ledger.get_tally(election_id, c.blockchain_candidate_id) for c in candidates}

    def _sync(self, tx_id: str | None, step, *args):
        """Run a step that follows a ledger transition; failures carry the transition's hash.

        Retrying the operation is safe: the ledger transition is skipped once
        the ledger already reports the target status.
        """
        try:
            return step(*args)
        except VoteXError as exc:
            if tx_id:
                exc.extra.setdefault("transaction_hash", tx_id)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Off-chain update after ledger tx %s failed: %s", tx_id, exc)
            raise OffchainSyncFailed(
                "The ledger transition succeeded but the off-chain record was not updated. Retry the request.",
                transaction_hash=tx_id,
            ) from exc

    # --- voting ---

    def cast_vote(self, election_id: Any, post_id: Any, candidate_id: Any, voter_wallet_address: str | None) -> dict[str, Any]:
        if not election_id or not post_id or not candidate_id or not voter_wallet_address:
            raise BadRequest("Missing election ID, post ID, candidate ID, or voter wallet address.")
        election_id = _as_int(election_id, "electionId")
        post_id = _as_int(post_id, "postId")
        candidate_id = _as_int(candidate_id, "candidateId")
        wallet = normalize_wallet(voter_wallet_address)

        election = self._election(election_id)
        if election.status != "active":
            raise InvalidState("Election is not active.")

        post = self.store.get_post(post_id)
        if not post or post.election_id != election_id:
            raise BadRequest("Invalid post ID for this election.")

        candidate = self.store.get_candidate(candidate_id)
        if not candidate or candidate.post_id != post_id:
            raise BadRequest("Invalid candidate ID for this post.")

        if self.store.has_vote_log(election_id, post_id, wallet):
            raise AlreadyVoted("You have already voted for this post in this election.")

        tx = self.ledger.submit_vote(election_id, post_id, candidate.blockchain_candidate_id, wallet)
        if not tx or not tx.tx_id:
            raise LedgerSubmissionFailed("Failed to record vote on the ledger.")

        verified = self._verify_vote(tx.tx_id, election_id, post_id, candidate.blockchain_candidate_id, wallet)

        log = VoteLog(
            election_id=election_id,
            post_id=post_id,
            candidate_id=candidate_id,
            voter_wallet_address=wallet,
            transaction_hash=tx.tx_id,
            verification_status=VERIFIED if verified else NEEDS_REVIEW,
        )
        receipt = VoterReceipt(
            voter_wallet_address=wallet,
            election_id=election_id,
            post_id=post_id,
            candidate_id=candidate_id,
            transaction_hash=tx.tx_id,
            blockchain_receipt_id=str(tx.confirmed_round) if tx.confirmed_round else None,
        )
        try:
            self.store.record_vote(log, receipt)
        except Exception as exc:  # noqa: BLE001
            # the ledger already holds the vote; report the hash so the client can check it there
            logger.error("Vote %s is on the ledger but the off-chain log failed: %s", tx.tx_id, exc)
            raise VoteRecordingFailed(
                "Vote was recorded on the ledger but the audit log could not be written.",
                transaction_hash=tx.tx_id,
            ) from exc

        logger.info("Vote cast for election %s post %s (tx %s)", election_id, post_id, tx.tx_id)
        return {
            "electionId": election_id,
            "postId": post_id,
            "candidateId": candidate_id,
            "voterWalletAddress": wallet,
            "transactionHash": tx.tx_id,
        }

    def _verify_vote(self, tx_id: str, election_id: int, post_id: int, candidate_ledger_id: str, wallet: str) -> bool:
        try:
            event = self.ledger.get_vote_event_by_tx(tx_id)
        except LedgerError as exc:
            logger.error("Could not read back vote transaction %s: %s", tx_id, exc)
            event = None

        if event is not None and self._event_matches(event, election_id, post_id, candidate_ledger_id, wallet):
            return True

        self._alert(
            "vote_verification_mismatch",
            {
                "transaction_hash": tx_id,
                "expected": {
                    "election_id": election_id,
                    "post_id": post_id,
                    "candidate_ledger_id": candidate_ledger_id,
                    "voter_address": wallet,
                },
                "observed": event.to_dict() if event else None,
            },
        )
        return False

    @staticmethod
    def _event_matches(event: VoteEvent, election_id: int, post_id: int, candidate_ledger_id: str, wallet: str) -> bool:
        return (
            event.election_id == election_id
            and event.post_id == post_id
            and event.candidate_ledger_id == candidate_ledger_id
            and event.voter_address.lower() == wallet.lower()
        )

    # --- queries ---

    def get_election(self, election_id: int) -> Election:
        return self._election(election_id)

    def get_election_results(self, election_id: int, gender: str | None = None, age_range: str | None = None) -> dict[str, Any]:
        election = self._election(election_id)

        if election.status == "pending":
            return {"election": election.to_dict(), "results": [], "isFinal": False}

        candidates = self.store.list_candidates_for_election(election.id)

        if election.status == "active":
            results = [
                self._result_row(c, self.ledger.get_tally(election.id, c.blockchain_candidate_id))
                for c in candidates
            ]
            return {"election": election.to_dict(), "results": results, "isFinal": False}

        parsed_range = parse_age_range(age_range)
        if gender or parsed_range:
            logs = self.store.list_vote_logs(election.id, gender=gender or None, age_range=parsed_range)
            counts: dict[int, int] = {}
            for log in logs:
                counts[log.candidate_id] = counts.get(log.candidate_id, 0) + 1
            results = [self._result_row(c, counts.get(c.id, 0)) for c in candidates]
            return {
                "election": election.to_dict(),
                "results": results,
                "isFinal": True,
                "filters": {"gender": gender or None, "ageRange": list(parsed_range) if parsed_range else None},
            }

        final = election.results or {}
        results = [self._result_row(c, int(final.get(c.blockchain_candidate_id, 0))) for c in candidates]
        return {"election": election.to_dict(), "results": results, "isFinal": True}

    def _result_row(self, candidate: Candidate, votes: int) -> dict[str, Any]:
        return {
            "candidate_id": candidate.id,
            "post_id": candidate.post_id,
            "blockchain_candidate_id": candidate.blockchain_candidate_id,
            "name": self._display_name(candidate),
            "votes": votes,
        }

    def get_voter_election_status(self, election_id: int, voter_wallet_address: str) -> dict[str, Any]:
        if not voter_wallet_address:
            raise BadRequest("Voter wallet address not found in token.")
        wallet = normalize_wallet(voter_wallet_address)
        election = self._election(election_id)
        has_voted = False
        if election.status != "pending":
            has_voted = self.ledger.has_voted(election.id, wallet)
        receipts = self.store.list_receipts(wallet, election_id=election.id)
        return {
            "electionId": election.id,
            "voterWalletAddress": wallet,
            "hasVoted": has_voted,
            "receipts": [r.to_dict() for r in receipts],
            "electionDetails": election.to_dict(),
        }

    def get_voter_receipts(self, voter_wallet_address: str) -> list[dict[str, Any]]:
        if not voter_wallet_address:
            raise BadRequest("Voter wallet address not found in token.")
        detailed = []
        for receipt in self.store.list_receipts(normalize_wallet(voter_wallet_address)):
            election = self.store.get_election(receipt.election_id)
            post = self.store.get_post(receipt.post_id)
            candidate = self.store.get_candidate(receipt.candidate_id)
            entry = receipt.to_dict()
            entry["electionTitle"] = election.title if election else "Unknown Election"
            entry["postName"] = post.name if post else "Unknown Post"
            entry["candidateName"] = self._display_name(candidate) if candidate else "Unknown Candidate"
            entry["blockExplorerUrl"] = (
                self.explorer_tx_url.format(tx_id=receipt.transaction_hash) if self.explorer_tx_url else None
            )
            detailed.append(entry)
        return detailed

    def audit_election(self, election_id: int) -> dict[str, Any]:
        """Compare the ledger's vote events with the off-chain vote log."""
        election = self._election(election_id)
        events = self.ledger.query_vote_events(election.id)
        logs = self.store.list_vote_logs(election.id)

        ledger_hashes = {e.tx_id for e in events if e.tx_id}
        logged_hashes = {log.transaction_hash for log in logs}
        missing_offchain = sorted(ledger_hashes - logged_hashes)
        missing_on_ledger = sorted(logged_hashes - ledger_hashes)
        needs_review = sorted(log.transaction_hash for log in logs if log.verification_status == NEEDS_REVIEW)

        if missing_on_ledger:
            self._alert(
                "audit_offchain_vote_missing_on_ledger",
                {"election_id": election.id, "transaction_hashes": missing_on_ledger},
            )

        return {
            "electionId": election.id,
            "totalVotesRecorded": len(events),
            "uniqueVoters": len({e.voter_address.lower() for e in events}),
            "offchainVoteLogs": len(logs),
            "missingOffchain": missing_offchain,
            "missingOnLedger": missing_on_ledger,
            "needsReview": needs_review,
            "integrityCheck": "passed" if not missing_offchain and not missing_on_ledger else "discrepancies_found",
            "rawEvents": [e.to_dict() for e in events],
        }
