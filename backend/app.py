import logging
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import Any

import click
from algosdk import mnemonic
from algosdk.v2client import algod
from flask import Blueprint, Flask, current_app, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from authenticator import ChallengeAuthenticator
from config import Settings
from coordinator import VoteCoordinator
from db import create_pool, ensure_schema
from deploy_contract import DEFAULT_FUNDING_MICROALGOS, deploy_application
from email_service import EmailVerifier, send_verification_otp
from errors import BadRequest, Forbidden, LedgerUnavailable, NotFound, Unauthorized, VoteXError
from ledger_client import AlgorandLedgerClient, LedgerClient
from models import normalize_email
from session_utils import TokenIssuer, admin_claims
from store import PostgresStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: Any
    ledger: LedgerClient | None
    ledger_error: str | None
    tokens: TokenIssuer
    authenticator: ChallengeAuthenticator
    coordinator: VoteCoordinator
    email_verifier: EmailVerifier


def _services() -> Services:
    return current_app.extensions["votex"]


def _coordinator() -> VoteCoordinator:
    services = _services()
    if services.ledger is None:
        raise LedgerUnavailable(f"Ledger client unavailable: {services.ledger_error or 'unknown error'}")
    return services.coordinator


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _parse_datetime(value: Any, name: str) -> datetime:
    if not value:
        raise BadRequest("Missing required election fields.")
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise BadRequest(f"{name} must be an ISO-8601 timestamp") from exc


def _bearer_claims() -> dict[str, Any]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise Unauthorized("Authentication token required. Format: Bearer [token]")
    token = auth_header.split(" ", 1)[1].strip()
    return _services().tokens.verify(token)


def require_voter(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        claims = _bearer_claims()
        if claims.get("role") != "voter" or not claims.get("wallet_address"):
            raise Forbidden("Access denied. Valid voter token with wallet address required.")
        g.claims = claims
        return view(*args, **kwargs)

    return wrapper


# --- voter surface ---

voter_bp = Blueprint("voter", __name__, url_prefix="/voter")


@voter_bp.route("/auth-message", methods=["GET"])
def auth_message():
    prefix = _services().settings.auth_message_prefix
    return jsonify({"message": f"{prefix}request a one-time challenge to sign with your wallet."})


@voter_bp.route("/request-auth-message", methods=["POST"])
def request_auth_message():
    email = str(_json_body().get("email", "")).strip()
    if not email:
        raise BadRequest("Email is required to request an authentication message.")
    message = _services().authenticator.request_challenge(email)
    return jsonify(
        {
            "message": "Please sign this message with your linked wallet to authenticate.",
            "messageToSign": message,
            "voterEmail": normalize_email(email),
        }
    )


@voter_bp.route("/authenticate", methods=["POST"])
def authenticate():
    data = _json_body()
    result = _services().authenticator.authenticate(
        email=str(data.get("email", "")).strip(),
        wallet_address=str(data.get("walletAddress", "")).strip(),
        message=data.get("message") or "",
        signature=data.get("signature") or "",
    )
    return jsonify(
        {
            "message": "Voter authentication successful!",
            "token": result["token"],
            "user": dict(result["voter"], role="voter"),
            "whitelist": result["whitelist"],
        }
    )


@voter_bp.route("/verify-email/start", methods=["POST"])
def verify_email_start():
    _services().email_verifier.start(str(_json_body().get("email", "")))
    return jsonify({"message": "Verification code sent"})


@voter_bp.route("/verify-email/confirm", methods=["POST"])
def verify_email_confirm():
    data = _json_body()
    voter = _services().email_verifier.confirm(str(data.get("email", "")), str(data.get("otp", "")))
    return jsonify({"message": "Email verified", "voter": voter.public_profile()})


@voter_bp.route("/elections/<int:election_id>", methods=["GET"])
def election_detail(election_id: int):
    election = _services().store.get_election(election_id)
    if not election:
        raise NotFound("Election not found.")
    return jsonify({"election": election.to_dict()})


@voter_bp.route("/elections/<int:election_id>/results", methods=["GET"])
def election_results(election_id: int):
    election = _services().store.get_election(election_id)
    # only live tallies are read from the ledger
    coordinator = _coordinator() if election and election.status == "active" else _services().coordinator
    result = coordinator.get_election_results(
        election_id,
        gender=request.args.get("gender") or None,
        age_range=request.args.get("ageRange") or None,
    )
    return jsonify(result)


@voter_bp.route("/vote", methods=["POST"])
@require_voter
def cast_vote():
    data = _json_body()
    result = _coordinator().cast_vote(
        data.get("electionId"),
        data.get("postId"),
        data.get("candidateId"),
        g.claims.get("wallet_address"),
    )
    result["message"] = "Vote cast successfully and recorded on the ledger."
    return jsonify(result)


@voter_bp.route("/elections/<int:election_id>/status", methods=["GET"])
@require_voter
def voter_election_status(election_id: int):
    return jsonify(_coordinator().get_voter_election_status(election_id, g.claims.get("wallet_address")))


@voter_bp.route("/receipts", methods=["GET"])
@require_voter
def voter_receipts():
    wallet = g.claims.get("wallet_address")
    return jsonify({"voterWalletAddress": wallet, "receipts": _services().coordinator.get_voter_receipts(wallet)})


# --- admin surface ---

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.before_request
def authenticate_admin():
    claims = _bearer_claims()
    if claims.get("role") != "admin":
        raise Forbidden("Access denied. Admin role required.")
    g.claims = claims


@admin_bp.route("/elections", methods=["POST"])
def create_election():
    data = _json_body()
    election = _coordinator().create_election(
        title=str(data.get("title", "")).strip(),
        description=str(data.get("description", "")).strip(),
        start_date=_parse_datetime(data.get("startDate"), "startDate"),
        end_date=_parse_datetime(data.get("endDate"), "endDate"),
    )
    return jsonify({"message": "Election created successfully.", "election": election.to_dict()}), 201


@admin_bp.route("/elections/<int:election_id>/start", methods=["POST"])
def start_election(election_id: int):
    election = _coordinator().start_election(election_id)
    return jsonify(
        {"message": f"Election {election_id} has been started. Voting is now active.", "election": election.to_dict()}
    )


@admin_bp.route("/elections/<int:election_id>/end", methods=["POST"])
def end_election(election_id: int):
    result = _coordinator().end_election(election_id)
    result["message"] = f"Election {election_id} has ended and results finalized."
    return jsonify(result)


@admin_bp.route("/elections/<int:election_id>/audit", methods=["GET"])
def audit_election(election_id: int):
    return jsonify({"report": _coordinator().audit_election(election_id)})


@admin_bp.route("/elections/<int:election_id>/posts", methods=["POST"])
def create_post(election_id: int):
    data = _json_body()
    post = _coordinator().create_post(election_id, str(data.get("name", "")).strip(), data.get("maxVotesPerVoter", 1))
    return jsonify({"message": "Election post created successfully.", "post": post.to_dict()}), 201


@admin_bp.route("/posts/<int:post_id>/candidates", methods=["POST"])
def add_candidate(post_id: int):
    data = _json_body()
    candidate = _coordinator().add_candidate(
        post_id, data.get("partyMemberId"), (data.get("blockchainCandidateId") or "").strip() or None
    )
    return jsonify({"message": "Candidate added to post successfully.", "candidate": candidate.to_dict()}), 201


@admin_bp.route("/voters", methods=["POST"])
def register_voter():
    data = _json_body()
    voter = _services().coordinator.register_voter(
        email=str(data.get("email", "")).strip(),
        name=str(data.get("name", "")).strip(),
        age=data.get("age"),
        gender=data.get("gender"),
        national_id_number=data.get("nationalIdNumber"),
    )
    return (
        jsonify(
            {
                "message": "Voter registered by admin successfully. Voter will need to link their wallet.",
                "voter": voter.public_profile(),
            }
        ),
        201,
    )


@admin_bp.route("/voters/whitelist", methods=["POST"])
def whitelist_voter():
    services = _services()
    if services.ledger is None:
        raise LedgerUnavailable(f"Ledger client unavailable: {services.ledger_error or 'unknown error'}")
    return jsonify(services.authenticator.whitelist_voter(str(_json_body().get("email", ""))))


@admin_bp.route("/parties", methods=["POST"])
def create_party():
    data = _json_body()
    name = str(data.get("name", "")).strip()
    if not name:
        raise BadRequest("Party name is required.")
    party = _services().store.create_party(name, data.get("description"))
    return jsonify({"party": {"id": party.id, "name": party.name, "description": party.description}}), 201


@admin_bp.route("/parties/<int:party_id>/members", methods=["POST"])
def create_party_member(party_id: int):
    data = _json_body()
    name = str(data.get("name", "")).strip()
    email = str(data.get("email", "")).strip()
    if not name or not email:
        raise BadRequest("Member name and email are required.")
    store = _services().store
    if not store.get_party(party_id):
        raise NotFound("Party not found.")
    member = store.create_party_member(party_id, name, email)
    return jsonify({"member": {"id": member.id, "party_id": member.party_id, "name": member.name, "email": member.email}}), 201


# --- app factory ---


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(VoteXError)
    def handle_votex_error(exc: VoteXError):
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.code, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.description, "code": exc.name.upper().replace(" ", "_")}), exc.code


def _register_cli(app: Flask) -> None:
    @app.cli.command("init-db")
    def init_db_command():
        """Create missing tables and indexes."""
        ensure_schema(_services().store.pool)
        click.echo("Schema ready.")

    @app.cli.command("create-admin")
    @click.argument("email")
    def create_admin_command(email: str):
        """Register an admin account."""
        user = _services().store.create_user(email, "admin")
        click.echo(f"Admin {user.email} created with id {user.id}.")

    @app.cli.command("issue-admin-token")
    @click.argument("email")
    def issue_admin_token_command(email: str):
        """Print a bearer token for an existing admin account."""
        services = _services()
        user = services.store.get_user_by_email(email)
        if not user or user.role != "admin":
            raise click.ClickException(f"No admin account for {email}")
        click.echo(services.tokens.issue(admin_claims(user.id, user.email), services.settings.admin_token_ttl_seconds))

    @app.cli.command("deploy-ledger")
    @click.option("--funding", default=DEFAULT_FUNDING_MICROALGOS, show_default=True, help="microalgos sent to the app")
    def deploy_ledger_command(funding: int):
        """Deploy the VoteX application and print its id."""
        settings = _services().settings
        if not settings.algod_address or not settings.service_mnemonic:
            raise click.ClickException("ALGORAND_ALGOD_ADDRESS and ALGORAND_SERVICE_MNEMONIC are required")
        headers = {"X-API-Key": settings.algod_token} if settings.algod_token else {}
        client = algod.AlgodClient(settings.algod_token, settings.algod_address, headers=headers)
        app_id = deploy_application(client, mnemonic.to_private_key(settings.service_mnemonic), funding)
        click.echo(f"app_id: {app_id}")


def create_app(
    settings: Settings | None = None,
    store=None,
    ledger: LedgerClient | None = None,
    send_email=None,
) -> Flask:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=getattr(logging, str(settings.log_level).upper(), logging.INFO))
    settings.require_session_secret()

    if store is None:
        settings.require_database()
        store = PostgresStore(
            create_pool(settings.database_url, settings.db_pool_min, settings.db_pool_max, settings.db_sslmode)
        )

    ledger_error = None
    if ledger is None:
        try:
            ledger = AlgorandLedgerClient.from_settings(settings)
        except RuntimeError as exc:
            ledger_error = str(exc)
            logger.warning("Ledger client unavailable: %s", ledger_error)

    if send_email is None:
        def send_email(to_email: str, otp: str) -> None:
            send_verification_otp(settings, to_email, otp)

    tokens = TokenIssuer(settings.session_secret)
    services = Services(
        settings=settings,
        store=store,
        ledger=ledger,
        ledger_error=ledger_error,
        tokens=tokens,
        authenticator=ChallengeAuthenticator(
            store,
            ledger,
            tokens,
            token_ttl_seconds=settings.voter_token_ttl_seconds,
            message_prefix=settings.auth_message_prefix,
            whitelist_on_authenticate=settings.whitelist_on_authenticate,
        ),
        coordinator=VoteCoordinator(
            store,
            ledger,
            explorer_tx_url=settings.explorer_tx_url,
            ledger_app_id=settings.app_id or None,
        ),
        email_verifier=EmailVerifier(
            store,
            send_email,
            expiry_minutes=settings.otp_expiry_minutes,
            max_attempts=settings.otp_max_attempts,
            resend_cooldown_seconds=settings.otp_resend_cooldown_seconds,
        ),
    )

    app = Flask(__name__)
    CORS(app, origins=settings.cors_allow_origins)
    app.extensions["votex"] = services

    _register_error_handlers(app)
    _register_cli(app)
    app.register_blueprint(voter_bp)
    app.register_blueprint(admin_bp)

    @app.route("/health")
    def health():
        ledger_status = services.ledger.health() if services.ledger else {"status": "unavailable"}
        return jsonify(
            {
                "status": "ok",
                "blockchain_client": ledger_status.get("status"),
                "blockchain_error": services.ledger_error or ledger_status.get("error"),
            }
        )

    return app


if __name__ == "__main__":
    create_app().run(debug=True)
