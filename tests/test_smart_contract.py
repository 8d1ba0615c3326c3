from smart_contract import VOTE_EVENT_PREFIX, compile_contract


def test_contract_compiles_to_teal_v8():
    approval, clear = compile_contract()
    assert approval.startswith("#pragma version 8")
    assert clear.startswith("#pragma version 8")


def test_approval_program_handles_every_method():
    approval, _ = compile_contract()
    for method in ("create_election", "create_post", "add_candidate", "whitelist", "start_voting", "end_voting", "vote"):
        assert f'"{method}"' in approval
    assert VOTE_EVENT_PREFIX in approval
    assert "log" in approval
