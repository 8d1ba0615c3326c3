import base64
import logging

from algosdk import account, transaction
from algosdk.logic import get_application_address

from ledger_client import wait_for_confirmation
from smart_contract import compile_contract

logger = logging.getLogger(__name__)

# covers the application account's minimum balance plus box storage for a
# few thousand voters; top up through a plain payment when it runs low
DEFAULT_FUNDING_MICROALGOS = 5_000_000
CONFIRMATION_ROUNDS = 10


def deploy_application(client, private_key: str, funding_microalgos: int = DEFAULT_FUNDING_MICROALGOS) -> int:
    """Create the VoteX application and fund its account for box storage."""
    sender = account.address_from_private_key(private_key)

    approval_teal, clear_teal = compile_contract()
    approval_program = base64.b64decode(client.compile(approval_teal)["result"])
    clear_program = base64.b64decode(client.compile(clear_teal)["result"])

    sp = client.suggested_params()
    txn = transaction.ApplicationCreateTxn(
        sender=sender,
        sp=sp,
        on_complete=transaction.OnComplete.NoOpOC,
        approval_program=approval_program,
        clear_program=clear_program,
        global_schema=transaction.StateSchema(num_uints=0, num_byte_slices=1),
        local_schema=transaction.StateSchema(0, 0),
    )
    txid = client.send_transaction(txn.sign(private_key))
    logger.info("Application create sent: %s", txid)
    app_id = int(wait_for_confirmation(client, txid, CONFIRMATION_ROUNDS)["application-index"])

    if funding_microalgos > 0:
        pay = transaction.PaymentTxn(
            sender=sender,
            sp=client.suggested_params(),
            receiver=get_application_address(app_id),
            amt=funding_microalgos,
        )
        pay_txid = client.send_transaction(pay.sign(private_key))
        wait_for_confirmation(client, pay_txid, CONFIRMATION_ROUNDS)
        logger.info("Funded application %s with %s microalgos", app_id, funding_microalgos)

    return app_id
