import logging
import secrets
from typing import Any

from eth_account import Account
from eth_account.messages import encode_defunct

from config import AUTH_MESSAGE_PREFIX
from errors import (
    AlreadyWhitelisted,
    BadRequest,
    Conflict,
    InvalidChallenge,
    LedgerError,
    NotFound,
    SignatureMismatch,
)
from ledger_client import LedgerClient, address_to_bytes
from models import LinkWallet, MarkEligible, SetNonce, Voter, advance_status, normalize_email, normalize_wallet
from session_utils import TokenIssuer, voter_claims

logger = logging.getLogger(__name__)

NONCE_BYTES = 16


def recover_signer(message: str, signature: str | bytes) -> str | None:
    """Recover the address that produced an EIP-191 personal_sign signature."""
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as exc:  # noqa: BLE001
        logger.info("Signature recovery failed: %s", exc)
        return None
    return recovered.lower()


class ChallengeAuthenticator:
    """Binds admin-registered voter profiles to wallets by signed challenges."""

    def __init__(
        self,
        store,
        ledger: LedgerClient | None,
        tokens: TokenIssuer,
        token_ttl_seconds: int = 12 * 3600,
        message_prefix: str = AUTH_MESSAGE_PREFIX,
        whitelist_on_authenticate: bool = True,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.tokens = tokens
        self.token_ttl_seconds = token_ttl_seconds
        self.message_prefix = message_prefix
        self.whitelist_on_authenticate = whitelist_on_authenticate

    def _voter_or_404(self, email: str) -> Voter:
        if not email:
            raise BadRequest("Email is required")
        voter = self.store.get_voter_by_email(normalize_email(email))
        if not voter:
            raise NotFound("Voter profile not found. Please ensure you are registered by an admin.")
        return voter

    def request_challenge(self, email: str) -> str:
        voter = self._voter_or_404(email)
        nonce = secrets.token_hex(NONCE_BYTES)
        # overwriting invalidates any challenge issued before this one
        self.store.update_voter(voter.id, SetNonce(nonce))
        logger.info("Issued authentication challenge for voter %s", voter.id)
        return f"{self.message_prefix}{nonce}"

    def authenticate(self, email: str, wallet_address: str, message: str, signature: str | bytes) -> dict[str, Any]:
        if not email or not wallet_address or not message or not signature:
            raise BadRequest("Message, signature, wallet address, and email are required.")
        try:
            address_to_bytes(wallet_address)
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc

        voter = self._voter_or_404(email)
        wallet = normalize_wallet(wallet_address)

        if not voter.auth_nonce or message != f"{self.message_prefix}{voter.auth_nonce}":
            raise InvalidChallenge("Invalid or outdated authentication message.")

        recovered = recover_signer(message, signature)
        if recovered is None or recovered != wallet:
            logger.warning("Signature mismatch for voter %s", voter.id)
            raise SignatureMismatch("Signature verification failed. Invalid signature or wallet address.")

        # the challenge is spent once the signature checks out, whatever happens next
        voter = self.store.update_voter(voter.id, SetNonce(None))

        if voter.wallet_address != wallet:
            owner = self.store.get_voter_by_wallet(wallet)
            if owner and owner.id != voter.id:
                raise Conflict("Wallet address is already linked to another voter.")
            status = advance_status(voter.registration_status, "wallet_linked")
            voter = self.store.update_voter(voter.id, LinkWallet(wallet, status))
            logger.info("Voter %s linked wallet %s", voter.id, wallet)

        whitelist = self._whitelist(voter) if self.whitelist_on_authenticate else {"status": "skipped"}
        if whitelist["status"] in ("whitelisted", "already_whitelisted"):
            voter = self.store.update_voter(
                voter.id, MarkEligible(advance_status(voter.registration_status, "eligible_on_chain"))
            )

        token = self.tokens.issue(voter_claims(voter.id, voter.email, wallet), self.token_ttl_seconds)
        return {"token": token, "voter": voter.public_profile(), "whitelist": whitelist}

    def _whitelist(self, voter: Voter) -> dict[str, Any]:
        if self.ledger is None:
            return {"status": "skipped"}
        if voter.is_eligible_on_chain:
            return {"status": "already_whitelisted"}
        try:
            tx = self.ledger.global_whitelist(voter.wallet_address)
        except AlreadyWhitelisted:
            logger.info("Wallet %s was already whitelisted", voter.wallet_address)
            return {"status": "already_whitelisted"}
        except LedgerError as exc:
            logger.warning("Global whitelist for voter %s failed: %s", voter.id, exc)
            return {"status": "failed", "error": exc.message}
        return {"status": "whitelisted", "transaction_hash": tx.tx_id}

    def whitelist_voter(self, email: str) -> dict[str, Any]:
        """Admin retry of the global whitelist for a voter with a linked wallet."""
        voter = self._voter_or_404(email)
        if not voter.wallet_address:
            raise BadRequest("Voter has not linked a wallet yet.")
        if self.ledger is None:
            raise BadRequest("Ledger client is not configured.")
        try:
            tx = self.ledger.global_whitelist(voter.wallet_address)
            result: dict[str, Any] = {"status": "whitelisted", "transaction_hash": tx.tx_id}
        except AlreadyWhitelisted:
            result = {"status": "already_whitelisted"}
        voter = self.store.update_voter(
            voter.id, MarkEligible(advance_status(voter.registration_status, "eligible_on_chain"))
        )
        result["voter"] = voter.public_profile()
        return result
