from datetime import datetime

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from app import create_app
from authenticator import ChallengeAuthenticator
from config import Settings
from coordinator import VoteCoordinator
from fakes import InMemoryLedgerClient, InMemoryStore
from session_utils import TokenIssuer

EXPLORER = "https://explorer.test/tx/{tx_id}"


def sign(account, message: str) -> str:
    signed = account.sign_message(encode_defunct(text=message))
    return "0x" + bytes(signed.signature).hex()


@pytest.fixture
def settings():
    return Settings(session_secret="test-secret", explorer_tx_url=EXPLORER, cors_allow_origins=["*"])


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def ledger():
    return InMemoryLedgerClient()


@pytest.fixture
def tokens(settings):
    return TokenIssuer(settings.session_secret)


@pytest.fixture
def authenticator(store, ledger, tokens, settings):
    return ChallengeAuthenticator(
        store,
        ledger,
        tokens,
        token_ttl_seconds=settings.voter_token_ttl_seconds,
        message_prefix=settings.auth_message_prefix,
    )


@pytest.fixture
def coordinator(store, ledger):
    return VoteCoordinator(store, ledger, explorer_tx_url=EXPLORER, ledger_app_id=42)


@pytest.fixture
def wallet():
    return Account.create()


@pytest.fixture
def outbox():
    return []


@pytest.fixture
def app(settings, store, ledger, outbox):
    app = create_app(settings, store=store, ledger=ledger, send_email=lambda to, otp: outbox.append((to, otp)))
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seed_election(store, coordinator):
    """Build an election with one post and the named candidates."""

    def _seed(candidate_names=("Alice", "Bob"), start=False):
        party = store.create_party(f"Party {len(store.parties) + 1}")
        election = coordinator.create_election(
            "Student Council", "Annual vote", datetime(2026, 1, 1, 9), datetime(2026, 1, 2, 17)
        )
        post = coordinator.create_post(election.id, "President", 1)
        candidates = []
        for name in candidate_names:
            member = store.create_party_member(party.id, name, f"{name.lower()}.{election.id}@party.test")
            candidates.append(coordinator.add_candidate(post.id, member.id, f"cand_{name.lower()}"))
        if start:
            coordinator.start_election(election.id)
        return election, post, candidates

    return _seed


@pytest.fixture
def eligible_voter(store, ledger):
    """A registered voter whose wallet is linked and whitelisted."""

    def _voter(email="voter@example.org", gender="Female", age=30, account=None):
        account = account or Account.create()
        voter = store.create_voter(email, "Test Voter", age, gender)
        wallet = account.address.lower()
        store.voters[voter.id].wallet_address = wallet
        store.voters[voter.id].is_eligible_on_chain = True
        store.voters[voter.id].registration_status = "eligible_on_chain"
        ledger.whitelist.add(wallet)
        return wallet

    return _voter
