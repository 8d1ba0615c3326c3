import hashlib
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from errors import Conflict, NotFound
from models import (
    ActivateElection,
    Candidate,
    Election,
    ElectionUpdate,
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
    VoterUpdate,
    normalize_email,
    normalize_wallet,
)

logger = logging.getLogger(__name__)

_VOTER_COLUMNS = (
    "id, email, name, age, gender, national_id_number, wallet_address, "
    "auth_nonce, is_eligible_on_chain, registration_status"
)
_ELECTION_COLUMNS = (
    "id, title, description, start_date, end_date, status, ledger_app_id, results, winning_candidate_id"
)
_CANDIDATE_COLUMNS = "id, post_id, election_id, party_member_id, blockchain_candidate_id"
_VOTE_LOG_COLUMNS = (
    "vl.id, vl.election_id, vl.post_id, vl.candidate_id, vl.voter_wallet_address, "
    "vl.transaction_hash, vl.verification_status, vl.timestamp"
)
_RECEIPT_COLUMNS = (
    "id, voter_wallet_address, election_id, post_id, candidate_id, transaction_hash, "
    "blockchain_receipt_id, timestamp"
)


def canonical_json(data: dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class PostgresStore:
    """Identity store and election metadata backed by a psycopg2 pool.

    Every public method runs in its own transaction; nothing here is ever
    held open across a ledger call.
    """

    def __init__(self, pool) -> None:
        self.pool = pool

    @contextmanager
    def _cursor(self) -> Iterator[RealDictCursor]:
        conn = self.pool.getconn()
        cur = conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cur
            conn.commit()
        except psycopg2.errors.UniqueViolation as exc:
            conn.rollback()
            constraint = getattr(exc.diag, "constraint_name", None) or "unique constraint"
            raise Conflict(f"Duplicate value violates {constraint}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            self.pool.putconn(conn)

    # --- users ---

    def create_user(self, email: str, role: str) -> User:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO users (email, role) VALUES (%s, %s) RETURNING id, email, role",
                (normalize_email(email), role),
            )
            return User(**cur.fetchone())

    def get_user_by_email(self, email: str) -> User | None:
        with self._cursor() as cur:
            cur.execute("SELECT id, email, role FROM users WHERE email = %s", (normalize_email(email),))
            row = cur.fetchone()
            return User(**row) if row else None

    # --- voters ---

    def create_voter(
        self,
        email: str,
        name: str,
        age: int,
        gender: str,
        national_id_number: str | None = None,
    ) -> Voter:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO voters (email, name, age, gender, national_id_number, registration_status)
                VALUES (%s, %s, %s, %s, %s, 'pending_email_verification')
                RETURNING {_VOTER_COLUMNS}
                """,
                (normalize_email(email), name, age, gender, national_id_number),
            )
            return Voter(**cur.fetchone())

    def get_voter_by_email(self, email: str) -> Voter | None:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_VOTER_COLUMNS} FROM voters WHERE email = %s", (normalize_email(email),))
            row = cur.fetchone()
            return Voter(**row) if row else None

    def get_voter_by_wallet(self, wallet_address: str) -> Voter | None:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_VOTER_COLUMNS} FROM voters WHERE wallet_address = %s",
                (normalize_wallet(wallet_address),),
            )
            row = cur.fetchone()
            return Voter(**row) if row else None

    def update_voter(self, voter_id: int, command: VoterUpdate) -> Voter:
        if isinstance(command, SetNonce):
            sql = "UPDATE voters SET auth_nonce = %s, updated_at = NOW() WHERE id = %s"
            params: tuple = (command.nonce, voter_id)
        elif isinstance(command, LinkWallet):
            # a new wallet has not been whitelisted yet
            sql = """
                UPDATE voters
                SET wallet_address = %s, registration_status = %s, is_eligible_on_chain = FALSE,
                    auth_nonce = NULL, updated_at = NOW()
                WHERE id = %s
            """
            params = (normalize_wallet(command.wallet_address), command.registration_status, voter_id)
        elif isinstance(command, MarkEligible):
            sql = """
                UPDATE voters
                SET is_eligible_on_chain = TRUE, registration_status = %s, updated_at = NOW()
                WHERE id = %s
            """
            params = (command.registration_status, voter_id)
        elif isinstance(command, MarkEmailVerified):
            sql = "UPDATE voters SET registration_status = %s, updated_at = NOW() WHERE id = %s"
            params = (command.registration_status, voter_id)
        else:
            raise TypeError(f"Unsupported voter update: {command!r}")

        with self._cursor() as cur:
            cur.execute(sql + f" RETURNING {_VOTER_COLUMNS}", params)
            row = cur.fetchone()
            if not row:
                raise NotFound("Voter not found")
            return Voter(**row)

    # --- parties ---

    def create_party(self, name: str, description: str | None = None) -> Party:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO parties (name, description) VALUES (%s, %s) RETURNING id, name, description",
                (name, description),
            )
            return Party(**cur.fetchone())

    def get_party(self, party_id: int) -> Party | None:
        with self._cursor() as cur:
            cur.execute("SELECT id, name, description FROM parties WHERE id = %s", (party_id,))
            row = cur.fetchone()
            return Party(**row) if row else None

    def create_party_member(self, party_id: int, name: str, email: str) -> PartyMember:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO party_members (party_id, name, email)
                VALUES (%s, %s, %s)
                RETURNING id, party_id, name, email
                """,
                (party_id, name, normalize_email(email)),
            )
            return PartyMember(**cur.fetchone())

    def get_party_member(self, member_id: int) -> PartyMember | None:
        with self._cursor() as cur:
            cur.execute("SELECT id, party_id, name, email FROM party_members WHERE id = %s", (member_id,))
            row = cur.fetchone()
            return PartyMember(**row) if row else None

    # --- elections, posts, candidates ---

    def create_election(
        self,
        title: str,
        description: str | None,
        start_date: datetime,
        end_date: datetime,
        ledger_app_id: int | None = None,
    ) -> Election:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO elections (title, description, start_date, end_date, status, ledger_app_id)
                VALUES (%s, %s, %s, %s, 'pending', %s)
                RETURNING {_ELECTION_COLUMNS}
                """,
                (title, description, start_date, end_date, ledger_app_id),
            )
            return Election(**cur.fetchone())

    def get_election(self, election_id: int) -> Election | None:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_ELECTION_COLUMNS} FROM elections WHERE id = %s", (election_id,))
            row = cur.fetchone()
            return Election(**row) if row else None

    def update_election(self, election_id: int, command: ElectionUpdate) -> Election:
        # the status guard in each WHERE clause keeps the lifecycle monotonic
        if isinstance(command, ActivateElection):
            sql = """
                UPDATE elections SET status = 'active', updated_at = NOW()
                WHERE id = %s AND status = 'pending'
            """
            params: tuple = (election_id,)
        elif isinstance(command, FinalizeElection):
            sql = """
                UPDATE elections
                SET status = 'ended', results = %s, winning_candidate_id = %s, updated_at = NOW()
                WHERE id = %s AND status = 'active'
            """
            params = (Json(command.results), command.winning_candidate_id, election_id)
        else:
            raise TypeError(f"Unsupported election update: {command!r}")

        with self._cursor() as cur:
            cur.execute(sql + f" RETURNING {_ELECTION_COLUMNS}", params)
            row = cur.fetchone()
            if not row:
                raise NotFound("Election not found in the expected state")
            return Election(**row)

    # The deletes below only undo a row whose ledger submission failed.

    def delete_election(self, election_id: int) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM elections WHERE id = %s AND status = 'pending'", (election_id,))

    def delete_post(self, post_id: int) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM posts WHERE id = %s", (post_id,))

    def delete_candidate(self, candidate_id: int) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM candidates WHERE id = %s", (candidate_id,))

    def create_post(self, election_id: int, name: str, max_votes_per_voter: int = 1) -> Post:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO posts (election_id, name, max_votes_per_voter)
                VALUES (%s, %s, %s)
                RETURNING id, election_id, name, max_votes_per_voter
                """,
                (election_id, name, max_votes_per_voter),
            )
            return Post(**cur.fetchone())

    def get_post(self, post_id: int) -> Post | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, election_id, name, max_votes_per_voter FROM posts WHERE id = %s",
                (post_id,),
            )
            row = cur.fetchone()
            return Post(**row) if row else None

    def create_candidate(
        self,
        post_id: int,
        election_id: int,
        party_member_id: int,
        blockchain_candidate_id: str,
    ) -> Candidate:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO candidates (post_id, election_id, party_member_id, blockchain_candidate_id)
                VALUES (%s, %s, %s, %s)
                RETURNING {_CANDIDATE_COLUMNS}
                """,
                (post_id, election_id, party_member_id, blockchain_candidate_id),
            )
            return Candidate(**cur.fetchone())

    def get_candidate(self, candidate_id: int) -> Candidate | None:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_CANDIDATE_COLUMNS} FROM candidates WHERE id = %s", (candidate_id,))
            row = cur.fetchone()
            return Candidate(**row) if row else None

    def list_candidates_for_election(self, election_id: int) -> list[Candidate]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_CANDIDATE_COLUMNS} FROM candidates WHERE election_id = %s ORDER BY id",
                (election_id,),
            )
            return [Candidate(**row) for row in cur.fetchall()]

    # --- vote logs and receipts ---

    def has_vote_log(self, election_id: int, post_id: int, wallet_address: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT 1 FROM vote_logs
                WHERE election_id = %s AND post_id = %s AND voter_wallet_address = %s
                LIMIT 1
                """,
                (election_id, post_id, normalize_wallet(wallet_address)),
            )
            return cur.fetchone() is not None

    def record_vote(self, log: VoteLog, receipt: VoterReceipt) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO vote_logs (
                    election_id, post_id, candidate_id, voter_wallet_address,
                    transaction_hash, verification_status
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    log.election_id,
                    log.post_id,
                    log.candidate_id,
                    normalize_wallet(log.voter_wallet_address),
                    log.transaction_hash,
                    log.verification_status,
                ),
            )
            cur.execute(
                """
                INSERT INTO voter_receipts (
                    voter_wallet_address, election_id, post_id, candidate_id,
                    transaction_hash, blockchain_receipt_id
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    normalize_wallet(receipt.voter_wallet_address),
                    receipt.election_id,
                    receipt.post_id,
                    receipt.candidate_id,
                    receipt.transaction_hash,
                    receipt.blockchain_receipt_id,
                ),
            )

    def list_vote_logs(
        self,
        election_id: int,
        gender: str | None = None,
        age_range: tuple[int, int] | None = None,
    ) -> list[VoteLog]:
        sql = f"SELECT {_VOTE_LOG_COLUMNS} FROM vote_logs vl"
        clauses = ["vl.election_id = %s"]
        params: list[Any] = [election_id]
        if gender is not None or age_range is not None:
            sql += " JOIN voters v ON v.wallet_address = vl.voter_wallet_address"
        if gender is not None:
            clauses.append("v.gender = %s")
            params.append(gender)
        if age_range is not None:
            clauses.append("v.age BETWEEN %s AND %s")
            params.extend(age_range)
        sql += " WHERE " + " AND ".join(clauses) + " ORDER BY vl.id"
        with self._cursor() as cur:
            cur.execute(sql, tuple(params))
            return [VoteLog(**row) for row in cur.fetchall()]

    def list_receipts(self, wallet_address: str, election_id: int | None = None) -> list[VoterReceipt]:
        sql = f"SELECT {_RECEIPT_COLUMNS} FROM voter_receipts WHERE voter_wallet_address = %s"
        params: list[Any] = [normalize_wallet(wallet_address)]
        if election_id is not None:
            sql += " AND election_id = %s"
            params.append(election_id)
        sql += " ORDER BY id DESC"
        with self._cursor() as cur:
            cur.execute(sql, tuple(params))
            return [VoterReceipt(**row) for row in cur.fetchall()]

    # --- email verification codes ---

    def save_email_otp(self, email: str, otp_hash: str, expires_at: datetime, sent_at: datetime) -> None:
        """Replace any outstanding code for ``email`` and reset its attempt count."""
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO email_otps (email, otp_hash, expires_at, attempts, last_sent_at)
                VALUES (%s, %s, %s, 0, %s)
                ON CONFLICT (email) DO UPDATE
                SET otp_hash = EXCLUDED.otp_hash, expires_at = EXCLUDED.expires_at,
                    attempts = 0, last_sent_at = EXCLUDED.last_sent_at
                """,
                (normalize_email(email), otp_hash, expires_at, sent_at),
            )

    def get_email_otp(self, email: str) -> EmailOtp | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT email, otp_hash, expires_at, attempts, last_sent_at FROM email_otps WHERE email = %s",
                (normalize_email(email),),
            )
            row = cur.fetchone()
            return EmailOtp(**row) if row else None

    def increment_email_otp_attempts(self, email: str) -> None:
        with self._cursor() as cur:
            cur.execute("UPDATE email_otps SET attempts = attempts + 1 WHERE email = %s", (normalize_email(email),))

    def delete_email_otp(self, email: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM email_otps WHERE email = %s", (normalize_email(email),))

    def delete_expired_email_otps(self, now: datetime) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM email_otps WHERE expires_at < %s", (now,))
            return cur.rowcount

    # --- audit events ---

    def record_audit_event(self, event_type: str, severity: str, payload: dict[str, Any]) -> None:
        entry = {"event_type": event_type, "severity": severity, "payload": payload}
        payload_json = canonical_json(entry)
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO audit_events (event_type, severity, payload_json, entry_hash)
                VALUES (%s, %s, %s, %s)
                """,
                (event_type, severity, payload_json, sha256_hex(payload_json)),
            )
