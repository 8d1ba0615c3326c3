import pytest
from eth_account import Account

from authenticator import recover_signer
from conftest import sign
from errors import BadRequest, Conflict, InvalidChallenge, LedgerSubmissionFailed, NotFound, SignatureMismatch


@pytest.fixture
def voter(store):
    return store.create_voter("Voter@Example.org", "Test Voter", 30, "Female")


def test_recover_signer_returns_lowercase_address(wallet):
    message = "Authenticate to VoteX: abc"
    assert recover_signer(message, sign(wallet, message)) == wallet.address.lower()


def test_recover_signer_returns_none_for_garbage():
    assert recover_signer("hello", "0x1234") is None


def test_challenge_overwrites_previous_nonce(authenticator, store, voter):
    first = authenticator.request_challenge("voter@example.org")
    second = authenticator.request_challenge("VOTER@example.org")
    assert first != second
    assert first.startswith("Authenticate to VoteX: ")
    assert store.voters[voter.id].auth_nonce == second.split(": ", 1)[1]


def test_challenge_for_unknown_email(authenticator):
    with pytest.raises(NotFound):
        authenticator.request_challenge("nobody@example.org")


def test_authenticate_links_wallet_and_whitelists(authenticator, store, ledger, voter, tokens, wallet):
    message = authenticator.request_challenge(voter.email)
    result = authenticator.authenticate(voter.email, wallet.address, message, sign(wallet, message))

    stored = store.voters[voter.id]
    assert stored.wallet_address == wallet.address.lower()
    assert stored.auth_nonce is None
    assert stored.is_eligible_on_chain is True
    assert stored.registration_status == "eligible_on_chain"
    assert result["whitelist"]["status"] == "whitelisted"
    assert "auth_nonce" not in result["voter"]

    claims = tokens.verify(result["token"])
    assert claims["role"] == "voter"
    assert claims["wallet_address"] == wallet.address.lower()
    assert ledger.call_names() == ["global_whitelist"]


def test_challenge_is_single_use(authenticator, voter, wallet):
    message = authenticator.request_challenge(voter.email)
    signature = sign(wallet, message)
    authenticator.authenticate(voter.email, wallet.address, message, signature)
    with pytest.raises(InvalidChallenge):
        authenticator.authenticate(voter.email, wallet.address, message, signature)


def test_superseded_challenge_is_rejected(authenticator, voter, wallet):
    old = authenticator.request_challenge(voter.email)
    authenticator.request_challenge(voter.email)
    with pytest.raises(InvalidChallenge):
        authenticator.authenticate(voter.email, wallet.address, old, sign(wallet, old))


def test_signature_from_other_wallet_is_rejected_and_nonce_survives(authenticator, store, voter, wallet):
    message = authenticator.request_challenge(voter.email)
    intruder = Account.create()
    with pytest.raises(SignatureMismatch):
        authenticator.authenticate(voter.email, wallet.address, message, sign(intruder, message))
    stored = store.voters[voter.id]
    assert stored.wallet_address is None
    assert stored.auth_nonce is not None
    # the legitimate owner can still use the same challenge
    authenticator.authenticate(voter.email, wallet.address, message, sign(wallet, message))


def test_relinking_resets_eligibility_but_not_status(authenticator, store, ledger, voter, wallet):
    message = authenticator.request_challenge(voter.email)
    authenticator.authenticate(voter.email, wallet.address, message, sign(wallet, message))

    ledger.failures["global_whitelist"] = LedgerSubmissionFailed("node down")
    replacement = Account.create()
    message = authenticator.request_challenge(voter.email)
    result = authenticator.authenticate(voter.email, replacement.address, message, sign(replacement, message))

    stored = store.voters[voter.id]
    assert stored.wallet_address == replacement.address.lower()
    assert stored.is_eligible_on_chain is False
    assert stored.registration_status == "eligible_on_chain"
    assert result["whitelist"]["status"] == "failed"
    assert result["token"]


def test_already_whitelisted_wallet_is_treated_as_success(authenticator, store, ledger, voter, wallet):
    ledger.whitelist.add(wallet.address.lower())
    message = authenticator.request_challenge(voter.email)
    result = authenticator.authenticate(voter.email, wallet.address, message, sign(wallet, message))
    assert result["whitelist"]["status"] == "already_whitelisted"
    assert store.voters[voter.id].is_eligible_on_chain is True


def test_wallet_owned_by_another_voter_conflicts(authenticator, store, voter, wallet):
    other = store.create_voter("other@example.org", "Other", 40, "Male")
    message = authenticator.request_challenge(other.email)
    authenticator.authenticate(other.email, wallet.address, message, sign(wallet, message))

    message = authenticator.request_challenge(voter.email)
    with pytest.raises(Conflict, match="already linked"):
        authenticator.authenticate(voter.email, wallet.address, message, sign(wallet, message))
    # the challenge is spent even though linking failed
    assert store.get_voter_by_email(voter.email).auth_nonce is None
    with pytest.raises(InvalidChallenge):
        authenticator.authenticate(voter.email, wallet.address, message, sign(wallet, message))
    assert store.get_voter_by_email(voter.email).wallet_address is None


@pytest.mark.parametrize(
    "email,address,message,signature",
    [
        ("", "0x" + "11" * 20, "m", "0x00"),
        ("voter@example.org", "", "m", "0x00"),
        ("voter@example.org", "0x" + "11" * 20, "", "0x00"),
        ("voter@example.org", "0x" + "11" * 20, "m", ""),
        ("voter@example.org", "not-an-address", "m", "0x00"),
    ],
)
def test_missing_or_malformed_inputs(authenticator, voter, email, address, message, signature):
    with pytest.raises(BadRequest):
        authenticator.authenticate(email, address, message, signature)


def test_whitelist_retry_marks_voter_eligible(authenticator, store, ledger, voter, wallet):
    ledger.failures["global_whitelist"] = LedgerSubmissionFailed("node down")
    message = authenticator.request_challenge(voter.email)
    authenticator.authenticate(voter.email, wallet.address, message, sign(wallet, message))
    assert store.voters[voter.id].is_eligible_on_chain is False

    result = authenticator.whitelist_voter(voter.email)
    assert result["status"] == "whitelisted"
    assert result["voter"]["is_eligible_on_chain"] is True


def test_whitelist_retry_needs_linked_wallet(authenticator, voter):
    with pytest.raises(BadRequest):
        authenticator.whitelist_voter(voter.email)
