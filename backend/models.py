from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

REGISTRATION_STATUSES = (
    "pending_email_verification",
    "email_verified",
    "wallet_linked",
    "eligible_on_chain",
)
ELECTION_STATUSES = ("pending", "active", "ended")
GENDERS = ("Male", "Female", "Other")
ROLES = ("admin", "voter")

VERIFIED = "verified"
NEEDS_REVIEW = "needs_review"


def advance_status(current: str | None, target: str) -> str:
    """Return whichever registration status is further along; never moves back."""
    if current not in REGISTRATION_STATUSES:
        return target
    if REGISTRATION_STATUSES.index(target) > REGISTRATION_STATUSES.index(current):
        return target
    return current


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_wallet(wallet: str) -> str:
    return wallet.strip().lower()


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass
class User:
    id: int
    email: str
    role: str


@dataclass
class Voter:
    id: int
    email: str
    name: str
    age: int | None
    gender: str | None
    national_id_number: str | None = None
    wallet_address: str | None = None
    auth_nonce: str | None = None
    is_eligible_on_chain: bool = False
    registration_status: str = "pending_email_verification"

    def public_profile(self) -> dict[str, Any]:
        # auth_nonce stays server side
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "age": self.age,
            "gender": self.gender,
            "wallet_address": self.wallet_address,
            "is_eligible_on_chain": self.is_eligible_on_chain,
            "registration_status": self.registration_status,
        }


@dataclass
class Party:
    id: int
    name: str
    description: str | None = None


@dataclass
class PartyMember:
    id: int
    party_id: int
    name: str
    email: str


@dataclass
class Election:
    id: int
    title: str
    description: str | None
    start_date: datetime
    end_date: datetime
    status: str = "pending"
    ledger_app_id: int | None = None
    results: dict[str, int] | None = None
    winning_candidate_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "status": self.status,
            "ledger_app_id": self.ledger_app_id,
            "results": self.results,
            "winning_candidate_id": self.winning_candidate_id,
        }


@dataclass
class Post:
    id: int
    election_id: int
    name: str
    max_votes_per_voter: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "election_id": self.election_id,
            "name": self.name,
            "max_votes_per_voter": self.max_votes_per_voter,
        }


@dataclass
class Candidate:
    id: int
    post_id: int
    election_id: int
    party_member_id: int
    blockchain_candidate_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "post_id": self.post_id,
            "election_id": self.election_id,
            "party_member_id": self.party_member_id,
            "blockchain_candidate_id": self.blockchain_candidate_id,
        }


@dataclass
class VoteLog:
    election_id: int
    post_id: int
    candidate_id: int
    voter_wallet_address: str
    transaction_hash: str
    verification_status: str = VERIFIED
    id: int | None = None
    timestamp: datetime | None = None


@dataclass
class VoterReceipt:
    voter_wallet_address: str
    election_id: int
    post_id: int
    candidate_id: int
    transaction_hash: str
    blockchain_receipt_id: str | None = None
    id: int | None = None
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "voter_wallet_address": self.voter_wallet_address,
            "election_id": self.election_id,
            "post_id": self.post_id,
            "candidate_id": self.candidate_id,
            "transaction_hash": self.transaction_hash,
            "blockchain_receipt_id": self.blockchain_receipt_id,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class EmailOtp:
    email: str
    otp_hash: str
    expires_at: datetime
    attempts: int
    last_sent_at: datetime


# Voter update commands. Each one maps to a single fixed UPDATE statement.


@dataclass(frozen=True)
class SetNonce:
    nonce: str | None


@dataclass(frozen=True)
class LinkWallet:
    wallet_address: str
    registration_status: str


@dataclass(frozen=True)
class MarkEligible:
    registration_status: str


@dataclass(frozen=True)
class MarkEmailVerified:
    registration_status: str


VoterUpdate = Union[SetNonce, LinkWallet, MarkEligible, MarkEmailVerified]


# Election update commands.


@dataclass(frozen=True)
class ActivateElection:
    pass


@dataclass(frozen=True)
class FinalizeElection:
    results: dict[str, int]
    winning_candidate_id: int | None


ElectionUpdate = Union[ActivateElection, FinalizeElection]
