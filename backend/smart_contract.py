from pyteal import *

STATUS_PENDING = 0
STATUS_ACTIVE = 1
STATUS_ENDED = 2

VOTE_EVENT_PREFIX = "VoteCast"

ADMIN_KEY = Bytes("admin")


def _election_key(election_arg: Expr) -> Expr:
    return Concat(Bytes("el_"), election_arg)


def _post_key(election_arg: Expr, post_arg: Expr) -> Expr:
    return Concat(Bytes("po_"), election_arg, post_arg)


def _candidate_key(election_arg: Expr, candidate_arg: Expr) -> Expr:
    return Concat(Bytes("ca_"), election_arg, Sha256(candidate_arg))


def _whitelist_key(voter_arg: Expr) -> Expr:
    return Concat(Bytes("wl_"), voter_arg)


def _post_vote_key(election_arg: Expr, post_arg: Expr, voter_arg: Expr) -> Expr:
    return Concat(Bytes("vp_"), election_arg, post_arg, voter_arg)


def _election_vote_key(election_arg: Expr, voter_arg: Expr) -> Expr:
    return Concat(Bytes("ve_"), election_arg, voter_arg)


def _election_status(election_arg: Expr) -> Expr:
    return Btoi(BoxExtract(_election_key(election_arg), Int(0), Int(8)))


def _arg(index: int) -> Expr:
    return Txn.application_args[index]


def _u64_arg(index: int) -> Expr:
    return Assert(Len(_arg(index)) == Int(8))


def _admin_call(arg_count: int) -> Expr:
    return Seq(
        Assert(Txn.application_args.length() == Int(arg_count)),
        Assert(Txn.sender() == App.globalGet(ADMIN_KEY)),
    )


def build_approval_program() -> Expr:
    on_create = Seq(
        App.globalPut(ADMIN_KEY, Txn.sender()),
        Approve(),
    )

    # create_election(election u64, title, description, start u64, end u64)
    election_exists = BoxLen(_election_key(_arg(1)))
    create_election = Seq(
        _admin_call(6),
        _u64_arg(1),
        _u64_arg(4),
        _u64_arg(5),
        election_exists,
        Assert(Not(election_exists.hasValue())),
        BoxPut(_election_key(_arg(1)), Concat(Itob(Int(STATUS_PENDING)), _arg(4), _arg(5))),
        Approve(),
    )

    # create_post(election u64, post u64, name, max_votes u64)
    post_exists = BoxLen(_post_key(_arg(1), _arg(2)))
    create_post = Seq(
        _admin_call(5),
        _u64_arg(1),
        _u64_arg(2),
        _u64_arg(4),
        Assert(_election_status(_arg(1)) == Int(STATUS_PENDING)),
        post_exists,
        Assert(Not(post_exists.hasValue())),
        BoxPut(_post_key(_arg(1), _arg(2)), _arg(4)),
        Approve(),
    )

    # add_candidate(election u64, post u64, candidate id, name)
    candidate_post = BoxLen(_post_key(_arg(1), _arg(2)))
    candidate_exists = BoxLen(_candidate_key(_arg(1), _arg(3)))
    add_candidate = Seq(
        _admin_call(5),
        _u64_arg(1),
        _u64_arg(2),
        Assert(Len(_arg(3)) > Int(0)),
        Assert(_election_status(_arg(1)) == Int(STATUS_PENDING)),
        candidate_post,
        Assert(candidate_post.hasValue()),
        candidate_exists,
        Assert(Not(candidate_exists.hasValue())),
        BoxPut(_candidate_key(_arg(1), _arg(3)), Concat(_arg(2), Itob(Int(0)))),
        Approve(),
    )

    # whitelist(voter 20 bytes)
    whitelisted = BoxLen(_whitelist_key(_arg(1)))
    whitelist = Seq(
        _admin_call(2),
        Assert(Len(_arg(1)) == Int(20)),
        whitelisted,
        Assert(Not(whitelisted.hasValue())),
        BoxPut(_whitelist_key(_arg(1)), Bytes("1")),
        Approve(),
    )

    start_voting = Seq(
        _admin_call(2),
        _u64_arg(1),
        Assert(_election_status(_arg(1)) == Int(STATUS_PENDING)),
        BoxReplace(_election_key(_arg(1)), Int(0), Itob(Int(STATUS_ACTIVE))),
        Approve(),
    )

    end_voting = Seq(
        _admin_call(2),
        _u64_arg(1),
        Assert(_election_status(_arg(1)) == Int(STATUS_ACTIVE)),
        BoxReplace(_election_key(_arg(1)), Int(0), Itob(Int(STATUS_ENDED))),
        Approve(),
    )

    # vote(election u64, post u64, candidate id, voter 20 bytes)
    tally_key = ScratchVar(TealType.bytes)
    voter_whitelisted = BoxLen(_whitelist_key(_arg(4)))
    already_voted = BoxLen(_post_vote_key(_arg(1), _arg(2), _arg(4)))
    vote = Seq(
        _admin_call(5),
        _u64_arg(1),
        _u64_arg(2),
        Assert(Len(_arg(4)) == Int(20)),
        Assert(_election_status(_arg(1)) == Int(STATUS_ACTIVE)),
        voter_whitelisted,
        Assert(voter_whitelisted.hasValue()),
        tally_key.store(_candidate_key(_arg(1), _arg(3))),
        Assert(BoxExtract(tally_key.load(), Int(0), Int(8)) == _arg(2)),
        already_voted,
        Assert(Not(already_voted.hasValue())),
        BoxReplace(
            tally_key.load(),
            Int(8),
            Itob(Btoi(BoxExtract(tally_key.load(), Int(8), Int(8))) + Int(1)),
        ),
        BoxPut(_post_vote_key(_arg(1), _arg(2), _arg(4)), Bytes("1")),
        BoxPut(_election_vote_key(_arg(1), _arg(4)), Bytes("1")),
        Log(Concat(Bytes(VOTE_EVENT_PREFIX), _arg(1), _arg(2), _arg(4), _arg(3))),
        Approve(),
    )

    return Cond(
        [Txn.application_id() == Int(0), on_create],
        [
            Txn.on_completion() == OnComplete.NoOp,
            Cond(
                [_arg(0) == Bytes("create_election"), create_election],
                [_arg(0) == Bytes("create_post"), create_post],
                [_arg(0) == Bytes("add_candidate"), add_candidate],
                [_arg(0) == Bytes("whitelist"), whitelist],
                [_arg(0) == Bytes("start_voting"), start_voting],
                [_arg(0) == Bytes("end_voting"), end_voting],
                [_arg(0) == Bytes("vote"), vote],
            ),
        ],
        [Txn.on_completion() == OnComplete.OptIn, Reject()],
        [Txn.on_completion() == OnComplete.CloseOut, Reject()],
        [Txn.on_completion() == OnComplete.UpdateApplication, Reject()],
        [Txn.on_completion() == OnComplete.DeleteApplication, Reject()],
    )


def build_clear_program() -> Expr:
    return Approve()


def compile_contract() -> tuple[str, str]:
    approval = compileTeal(
        build_approval_program(),
        mode=Mode.Application,
        version=8,
    )
    clear = compileTeal(
        build_clear_program(),
        mode=Mode.Application,
        version=8,
    )
    return approval, clear


if __name__ == "__main__":
    approval_teal, clear_teal = compile_contract()
    print(approval_teal)
    print(clear_teal)
