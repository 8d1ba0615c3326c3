import hashlib
import logging
import secrets
import smtplib
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Callable

from errors import BadRequest, NotFound, TooManyRequests
from models import MarkEmailVerified, advance_status, normalize_email

logger = logging.getLogger(__name__)


def send_verification_otp(settings, to_email: str, otp: str) -> None:
    msg = EmailMessage()
    msg["Subject"] = "VoteX – Verify your email"
    msg["From"] = settings.smtp_email
    msg["To"] = to_email

    msg.set_content(f"""
Hello,

Your VoteX verification code is:

{otp}

This code is valid for {settings.otp_expiry_minutes} minutes.
If you did not request this, please ignore this email.

– VoteX Team
""")

    server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
    try:
        server.starttls()
        server.login(settings.smtp_email, settings.smtp_password)
        server.send_message(msg)
    finally:
        server.quit()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _hash_otp(otp: str) -> str:
    return hashlib.sha256(otp.encode("utf-8")).hexdigest()


class EmailVerifier:
    """One-time codes that move a voter from pending_email_verification to email_verified.

    Only a hash of each code is kept, in the store, so any worker can confirm
    a code another worker sent.
    """

    def __init__(
        self,
        store,
        send: Callable[[str, str], None],
        expiry_minutes: int = 10,
        max_attempts: int = 3,
        resend_cooldown_seconds: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.send = send
        self.expiry_minutes = expiry_minutes
        self.max_attempts = max_attempts
        self.resend_cooldown_seconds = resend_cooldown_seconds
        self.clock = clock

    def start(self, email: str) -> None:
        key = normalize_email(email or "")
        if not key:
            raise BadRequest("Email is required")
        if not self.store.get_voter_by_email(key):
            raise NotFound("Voter profile not found.")

        now = self.clock()
        self.store.delete_expired_email_otps(now)
        existing = self.store.get_email_otp(key)
        if existing and now < existing.last_sent_at + timedelta(seconds=self.resend_cooldown_seconds):
            raise TooManyRequests("Please wait before requesting another code.")

        otp = f"{secrets.randbelow(1_000_000):06d}"
        self.store.save_email_otp(key, _hash_otp(otp), now + timedelta(minutes=self.expiry_minutes), now)
        self.send(key, otp)
        logger.info("Sent email verification code")

    def confirm(self, email: str, otp: str):
        key = normalize_email(email or "")
        record = self.store.get_email_otp(key)
        if not record:
            raise BadRequest("Verification code not found. Please request a new code.")
        if record.attempts >= self.max_attempts:
            raise TooManyRequests("Too many attempts. Please request a new code.")
        if self.clock() > record.expires_at:
            self.store.delete_email_otp(key)
            raise BadRequest("Verification code expired. Please request a new code.")
        if not secrets.compare_digest(_hash_otp(str(otp or "").strip()), record.otp_hash):
            self.store.increment_email_otp_attempts(key)
            raise BadRequest("Invalid verification code.")

        voter = self.store.get_voter_by_email(key)
        if not voter:
            raise NotFound("Voter profile not found.")
        self.store.delete_email_otp(key)
        return self.store.update_voter(
            voter.id, MarkEmailVerified(advance_status(voter.registration_status, "email_verified"))
        )
