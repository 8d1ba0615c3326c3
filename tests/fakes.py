"""In-memory stand-ins for the Postgres store and the Algorand ledger."""

import itertools
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from errors import AlreadyWhitelisted, Conflict, LedgerSubmissionFailed, NotFound
from ledger_client import LedgerClient, LedgerTx, VoteEvent, address_to_bytes
from models import (
    ActivateElection,
    Candidate,
    Election,
    EmailOtp,
    FinalizeElection,
    LinkWallet,
    MarkEligible,
    MarkEmailVerified,
    Party,
    PartyMember,
    Post,
    SetNonce,
    User,
    Voter,
    VoteLog,
    VoterReceipt,
    normalize_email,
    normalize_wallet,
)


class InMemoryStore:
    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.users: dict[int, User] = {}
        self.voters: dict[int, Voter] = {}
        self.parties: dict[int, Party] = {}
        self.members: dict[int, PartyMember] = {}
        self.elections: dict[int, Election] = {}
        self.posts: dict[int, Post] = {}
        self.candidates: dict[int, Candidate] = {}
        self.vote_logs: list[VoteLog] = []
        self.receipts: list[VoterReceipt] = []
        self.audit_events: list[dict[str, Any]] = []
        self.email_otps: dict[str, EmailOtp] = {}
        self.fail_record_vote: Exception | None = None

    def _next_id(self) -> int:
        return next(self._ids)

    # users

    def create_user(self, email: str, role: str) -> User:
        email = normalize_email(email)
        if any(u.email == email for u in self.users.values()):
            raise Conflict("Duplicate value violates users_email_key")
        user = User(id=self._next_id(), email=email, role=role)
        self.users[user.id] = user
        return replace(user)

    def get_user_by_email(self, email: str) -> User | None:
        email = normalize_email(email)
        for user in self.users.values():
            if user.email == email:
                return replace(user)
        return None

    # voters

    def create_voter(self, email, name, age, gender, national_id_number=None) -> Voter:
        email = normalize_email(email)
        for voter in self.voters.values():
            if voter.email == email:
                raise Conflict("Duplicate value violates voters_email_key")
            if national_id_number and voter.national_id_number == national_id_number:
                raise Conflict("Duplicate value violates voters_national_id_number_key")
        voter = Voter(
            id=self._next_id(),
            email=email,
            name=name,
            age=age,
            gender=gender,
            national_id_number=national_id_number,
        )
        self.voters[voter.id] = voter
        return replace(voter)

    def get_voter_by_email(self, email: str) -> Voter | None:
        email = normalize_email(email)
        for voter in self.voters.values():
            if voter.email == email:
                return replace(voter)
        return None

    def get_voter_by_wallet(self, wallet_address: str) -> Voter | None:
        wallet = normalize_wallet(wallet_address)
        for voter in self.voters.values():
            if voter.wallet_address == wallet:
                return replace(voter)
        return None

    def update_voter(self, voter_id: int, command) -> Voter:
        voter = self.voters.get(voter_id)
        if voter is None:
            raise NotFound("Voter not found")
        if isinstance(command, SetNonce):
            voter = replace(voter, auth_nonce=command.nonce)
        elif isinstance(command, LinkWallet):
            wallet = normalize_wallet(command.wallet_address)
            if any(v.wallet_address == wallet and v.id != voter_id for v in self.voters.values()):
                raise Conflict("Duplicate value violates voters_wallet_address_key")
            voter = replace(
                voter,
                wallet_address=wallet,
                registration_status=command.registration_status,
                is_eligible_on_chain=False,
                auth_nonce=None,
            )
        elif isinstance(command, MarkEligible):
            voter = replace(voter, is_eligible_on_chain=True, registration_status=command.registration_status)
        elif isinstance(command, MarkEmailVerified):
            voter = replace(voter, registration_status=command.registration_status)
        else:
            raise TypeError(f"Unsupported voter update: {command!r}")
        self.voters[voter_id] = voter
        return replace(voter)

    # parties

    def create_party(self, name, description=None) -> Party:
        if any(p.name == name for p in self.parties.values()):
            raise Conflict("Duplicate value violates parties_name_key")
        party = Party(id=self._next_id(), name=name, description=description)
        self.parties[party.id] = party
        return replace(party)

    def get_party(self, party_id: int) -> Party | None:
        party = self.parties.get(party_id)
        return replace(party) if party else None

    def create_party_member(self, party_id, name, email) -> PartyMember:
        email = normalize_email(email)
        if any(m.email == email for m in self.members.values()):
            raise Conflict("Duplicate value violates party_members_email_key")
        member = PartyMember(id=self._next_id(), party_id=party_id, name=name, email=email)
        self.members[member.id] = member
        return replace(member)

    def get_party_member(self, member_id: int) -> PartyMember | None:
        member = self.members.get(member_id)
        return replace(member) if member else None

    # elections, posts, candidates

    def create_election(self, title, description, start_date, end_date, ledger_app_id=None) -> Election:
        election = Election(
            id=self._next_id(),
            title=title,
            description=description,
            start_date=start_date,
            end_date=end_date,
            ledger_app_id=ledger_app_id,
        )
        self.elections[election.id] = election
        return replace(election)

    def get_election(self, election_id: int) -> Election | None:
        election = self.elections.get(election_id)
        return replace(election) if election else None

    def update_election(self, election_id: int, command) -> Election:
        election = self.elections.get(election_id)
        if isinstance(command, ActivateElection):
            if election is None or election.status != "pending":
                raise NotFound("Election not found in the expected state")
            election = replace(election, status="active")
        elif isinstance(command, FinalizeElection):
            if election is None or election.status != "active":
                raise NotFound("Election not found in the expected state")
            election = replace(
                election,
                status="ended",
                results=dict(command.results),
                winning_candidate_id=command.winning_candidate_id,
            )
        else:
            raise TypeError(f"Unsupported election update: {command!r}")
        self.elections[election_id] = election
        return replace(election)

    def delete_election(self, election_id: int) -> None:
        election = self.elections.get(election_id)
        if election and election.status == "pending":
            del self.elections[election_id]

    def delete_post(self, post_id: int) -> None:
        self.posts.pop(post_id, None)

    def delete_candidate(self, candidate_id: int) -> None:
        self.candidates.pop(candidate_id, None)

    def create_post(self, election_id, name, max_votes_per_voter=1) -> Post:
        post = Post(id=self._next_id(), election_id=election_id, name=name, max_votes_per_voter=max_votes_per_voter)
        self.posts[post.id] = post
        return replace(post)

    def get_post(self, post_id: int) -> Post | None:
        post = self.posts.get(post_id)
        return replace(post) if post else None

    def create_candidate(self, post_id, election_id, party_member_id, blockchain_candidate_id) -> Candidate:
        if any(c.post_id == post_id and c.party_member_id == party_member_id for c in self.candidates.values()):
            raise Conflict("Duplicate value violates candidates_post_id_party_member_id_key")
        candidate = Candidate(
            id=self._next_id(),
            post_id=post_id,
            election_id=election_id,
            party_member_id=party_member_id,
            blockchain_candidate_id=blockchain_candidate_id,
        )
        self.candidates[candidate.id] = candidate
        return replace(candidate)

    def get_candidate(self, candidate_id: int) -> Candidate | None:
        candidate = self.candidates.get(candidate_id)
        return replace(candidate) if candidate else None

    def list_candidates_for_election(self, election_id: int) -> list[Candidate]:
        return [replace(c) for _, c in sorted(self.candidates.items()) if c.election_id == election_id]

    # vote logs and receipts

    def has_vote_log(self, election_id, post_id, wallet_address) -> bool:
        wallet = normalize_wallet(wallet_address)
        return any(
            log.election_id == election_id and log.post_id == post_id and log.voter_wallet_address == wallet
            for log in self.vote_logs
        )

    def record_vote(self, log: VoteLog, receipt: VoterReceipt) -> None:
        if self.fail_record_vote is not None:
            raise self.fail_record_vote
        if any(existing.transaction_hash == log.transaction_hash for existing in self.vote_logs):
            raise Conflict("Duplicate value violates vote_logs_transaction_hash_key")
        if any(existing.transaction_hash == receipt.transaction_hash for existing in self.receipts):
            raise Conflict("Duplicate value violates voter_receipts_transaction_hash_key")
        now = datetime.now(timezone.utc)
        self.vote_logs.append(
            replace(log, id=self._next_id(), voter_wallet_address=normalize_wallet(log.voter_wallet_address), timestamp=now)
        )
        self.receipts.append(
            replace(
                receipt,
                id=self._next_id(),
                voter_wallet_address=normalize_wallet(receipt.voter_wallet_address),
                timestamp=now,
            )
        )

    def list_vote_logs(self, election_id, gender=None, age_range=None) -> list[VoteLog]:
        logs = []
        for log in self.vote_logs:
            if log.election_id != election_id:
                continue
            if gender is not None or age_range is not None:
                voter = self.get_voter_by_wallet(log.voter_wallet_address)
                if voter is None:
                    continue
                if gender is not None and voter.gender != gender:
                    continue
                if age_range is not None and not (age_range[0] <= (voter.age or 0) <= age_range[1]):
                    continue
            logs.append(replace(log))
        return logs

    def list_receipts(self, wallet_address, election_id=None) -> list[VoterReceipt]:
        wallet = normalize_wallet(wallet_address)
        found = [
            replace(r)
            for r in self.receipts
            if r.voter_wallet_address == wallet and (election_id is None or r.election_id == election_id)
        ]
        return sorted(found, key=lambda r: r.id, reverse=True)

    def record_audit_event(self, event_type, severity, payload) -> None:
        self.audit_events.append({"event_type": event_type, "severity": severity, "payload": payload})

    # email verification codes

    def save_email_otp(self, email, otp_hash, expires_at, sent_at) -> None:
        key = normalize_email(email)
        self.email_otps[key] = EmailOtp(key, otp_hash, expires_at, 0, sent_at)

    def get_email_otp(self, email) -> EmailOtp | None:
        found = self.email_otps.get(normalize_email(email))
        return replace(found) if found else None

    def increment_email_otp_attempts(self, email) -> None:
        found = self.email_otps.get(normalize_email(email))
        if found:
            found.attempts += 1

    def delete_email_otp(self, email) -> None:
        self.email_otps.pop(normalize_email(email), None)

    def delete_expired_email_otps(self, now) -> int:
        expired = [key for key, otp in self.email_otps.items() if otp.expires_at < now]
        for key in expired:
            del self.email_otps[key]
        return len(expired)


class InMemoryLedgerClient(LedgerClient):
    """Mirrors the contract's checks closely enough for coordinator tests.

    ``failures`` maps a method name to an exception raised on its next call;
    ``tamper`` rewrites what ``get_vote_event_by_tx`` reads back.
    """

    def __init__(self) -> None:
        self._tx_ids = itertools.count(1)
        self._round = 100
        self.calls: list[tuple[str, tuple]] = []
        self.reads: list[tuple[str, tuple]] = []
        self.failures: dict[str, Exception] = {}
        self.tamper = None
        self.elections: dict[int, int] = {}
        self.tallies: dict[tuple[int, str], int] = {}
        self.whitelist: set[str] = set()
        self.post_votes: set[tuple[int, int, str]] = set()
        self.election_votes: set[tuple[int, str]] = set()
        self.events: list[VoteEvent] = []

    def _read(self, method: str, *args) -> None:
        self.reads.append((method, args))
        failure = self.failures.pop(method, None)
        if failure is not None:
            raise failure

    def _tx(self, method: str, *args) -> LedgerTx:
        self.calls.append((method, args))
        failure = self.failures.pop(method, None)
        if failure is not None:
            raise failure
        self._round += 1
        return LedgerTx(tx_id=f"TX{next(self._tx_ids):04d}", confirmed_round=self._round)

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def submit_election(self, election_id, title, description, start, end) -> LedgerTx:
        tx = self._tx("submit_election", election_id, title, description, start, end)
        self.elections[election_id] = 0
        return tx

    def submit_post(self, election_id, post_id, name, max_votes) -> LedgerTx:
        return self._tx("submit_post", election_id, post_id, name, max_votes)

    def submit_candidate(self, election_id, post_id, candidate_ledger_id, name) -> LedgerTx:
        tx = self._tx("submit_candidate", election_id, post_id, candidate_ledger_id, name)
        self.tallies[(election_id, candidate_ledger_id)] = 0
        return tx

    def is_whitelisted(self, address) -> bool:
        return normalize_wallet(address) in self.whitelist

    def global_whitelist(self, address) -> LedgerTx:
        address_to_bytes(address)
        if self.is_whitelisted(address):
            self.calls.append(("global_whitelist", (address,)))
            raise AlreadyWhitelisted(f"{address} is already whitelisted")
        tx = self._tx("global_whitelist", address)
        self.whitelist.add(normalize_wallet(address))
        return tx

    def get_election_status(self, election_id) -> int | None:
        self._read("get_election_status", election_id)
        return self.elections.get(election_id)

    def start_voting(self, election_id) -> LedgerTx:
        if self.elections.get(election_id) != 0:
            self.calls.append(("start_voting", (election_id,)))
            raise LedgerSubmissionFailed("logic eval error: election is not pending")
        tx = self._tx("start_voting", election_id)
        self.elections[election_id] = 1
        return tx

    def end_voting(self, election_id) -> LedgerTx:
        if self.elections.get(election_id) != 1:
            self.calls.append(("end_voting", (election_id,)))
            raise LedgerSubmissionFailed("logic eval error: election is not active")
        tx = self._tx("end_voting", election_id)
        self.elections[election_id] = 2
        return tx

    def submit_vote(self, election_id, post_id, candidate_ledger_id, voter_address) -> LedgerTx:
        wallet = normalize_wallet(voter_address)
        if wallet not in self.whitelist:
            self.calls.append(("submit_vote", (election_id, post_id, candidate_ledger_id, wallet)))
            raise LedgerSubmissionFailed("voter is not whitelisted")
        if (election_id, post_id, wallet) in self.post_votes:
            self.calls.append(("submit_vote", (election_id, post_id, candidate_ledger_id, wallet)))
            raise LedgerSubmissionFailed("already voted for this post")
        tx = self._tx("submit_vote", election_id, post_id, candidate_ledger_id, wallet)
        key = (election_id, candidate_ledger_id)
        self.tallies[key] = self.tallies.get(key, 0) + 1
        self.post_votes.add((election_id, post_id, wallet))
        self.election_votes.add((election_id, wallet))
        self.events.append(
            VoteEvent(
                election_id=election_id,
                post_id=post_id,
                candidate_ledger_id=candidate_ledger_id,
                voter_address=wallet,
                tx_id=tx.tx_id,
                confirmed_round=tx.confirmed_round,
            )
        )
        return tx

    def get_vote_event_by_tx(self, tx_id) -> VoteEvent | None:
        for event in self.events:
            if event.tx_id == tx_id:
                return self.tamper(event) if self.tamper else event
        return None

    def get_tally(self, election_id, candidate_ledger_id) -> int:
        self._read("get_tally", election_id, candidate_ledger_id)
        return self.tallies.get((election_id, candidate_ledger_id), 0)

    def has_voted(self, election_id, voter_address) -> bool:
        self._read("has_voted", election_id, voter_address)
        return (election_id, normalize_wallet(voter_address)) in self.election_votes

    def query_vote_events(self, election_id) -> list[VoteEvent]:
        self._read("query_vote_events", election_id)
        return [e for e in self.events if e.election_id == election_id]
