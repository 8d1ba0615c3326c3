import logging

from psycopg2 import pool as pg_pool

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id SERIAL PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('admin', 'voter')),
    created_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS parties (
    id SERIAL PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    description TEXT,
    created_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS party_members (
    id SERIAL PRIMARY KEY,
    party_id INTEGER NOT NULL REFERENCES parties(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    email TEXT UNIQUE NOT NULL,
    created_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS voters (
    id SERIAL PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    age INTEGER,
    gender TEXT CHECK (gender IN ('Male', 'Female', 'Other')),
    national_id_number TEXT UNIQUE,
    wallet_address TEXT UNIQUE,
    auth_nonce TEXT,
    is_eligible_on_chain BOOLEAN NOT NULL DEFAULT FALSE,
    registration_status TEXT NOT NULL DEFAULT 'pending_email_verification',
    created_at TIMESTAMP DEFAULT NOW(),
    updated_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS elections (
    id SERIAL PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    start_date TIMESTAMP NOT NULL,
    end_date TIMESTAMP NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'active', 'ended')),
    ledger_app_id BIGINT,
    results JSONB,
    winning_candidate_id INTEGER,
    created_at TIMESTAMP DEFAULT NOW(),
    updated_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS posts (
    id SERIAL PRIMARY KEY,
    election_id INTEGER NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    max_votes_per_voter INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS candidates (
    id SERIAL PRIMARY KEY,
    post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    election_id INTEGER NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    party_member_id INTEGER NOT NULL REFERENCES party_members(id) ON DELETE CASCADE,
    blockchain_candidate_id TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT NOW(),
    UNIQUE (post_id, party_member_id)
);

CREATE TABLE IF NOT EXISTS vote_logs (
    id SERIAL PRIMARY KEY,
    election_id INTEGER NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    candidate_id INTEGER NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
    voter_wallet_address TEXT NOT NULL,
    transaction_hash TEXT UNIQUE NOT NULL,
    verification_status TEXT NOT NULL DEFAULT 'verified',
    timestamp TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS voter_receipts (
    id SERIAL PRIMARY KEY,
    voter_wallet_address TEXT NOT NULL,
    election_id INTEGER NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    candidate_id INTEGER NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
    transaction_hash TEXT UNIQUE NOT NULL,
    blockchain_receipt_id TEXT,
    timestamp TIMESTAMP DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS email_otps (
    email TEXT PRIMARY KEY,
    otp_hash TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_sent_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_events (
    id SERIAL PRIMARY KEY,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    entry_hash TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT NOW()
);
"""

INDEX_SQL = (
    """
    CREATE INDEX IF NOT EXISTS vote_logs_election_post_wallet
    ON vote_logs (election_id, post_id, voter_wallet_address);
    """,
    """
    CREATE INDEX IF NOT EXISTS voter_receipts_wallet
    ON voter_receipts (voter_wallet_address);
    """,
)


def create_pool(dsn: str, min_conn: int = 1, max_conn: int = 10, sslmode: str = "require"):
    return pg_pool.ThreadedConnectionPool(
        min_conn,
        max_conn,
        dsn=dsn,
        sslmode=sslmode,
        connect_timeout=10,
    )


def ensure_schema(pool) -> None:
    conn = pool.getconn()
    cur = conn.cursor()
    try:
        cur.execute(SCHEMA_SQL)
        for statement in INDEX_SQL:
            cur.execute(statement)
        conn.commit()
        logger.info("Database schema ensured")
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()
        pool.putconn(conn)
