from pyteal import *

# Per-project escrow app.
# Boxes store each contributor's microAlgo total keyed by the address bytes.
# Once raised >= goal the balance is paid out to the owner automatically.
# The payout never dips below the account minimum balance (base + boxes), and
# inner transactions carry fee 0: the outer app call pays for them (fee pooling).

# Global state keys, read back by agrifund.chain_gateway
OWNER = "owner"
ADMIN = "admin"
GOAL = "goal"
RAISED = "raised"
START_TS = "start_ts"
DEADLINE = "deadline"
ACTIVE = "active"
COMPLETED = "completed"
RELEASED = "released"
CONTRIBUTORS = "contributors"

NUM_UINTS = 8
NUM_BYTE_SLICES = 2


def get_approval():
    owner        = Bytes(OWNER)         # bytes (address)
    admin        = Bytes(ADMIN)         # bytes (address)
    goal         = Bytes(GOAL)          # uint
    raised       = Bytes(RAISED)        # uint
    start_ts     = Bytes(START_TS)      # uint
    deadline_ts  = Bytes(DEADLINE)      # uint
    active       = Bytes(ACTIVE)        # uint 0/1
    completed    = Bytes(COMPLETED)     # uint 0/1
    released     = Bytes(RELEASED)      # uint 0/1
    contributors = Bytes(CONTRIBUTORS)  # uint

    sender = Txn.sender()
    now    = Global.latest_timestamp()

    app_addr = Global.current_application_address()
    payout   = ScratchVar(TealType.uint64)

    @Subroutine(TealType.none)
    def release_to_owner():
        return Seq(
            # raised, capped by what the account can spend above its minimum balance
            payout.store(Balance(app_addr) - MinBalance(app_addr)),
            If(App.globalGet(raised) < payout.load()).Then(payout.store(App.globalGet(raised))),
            InnerTxnBuilder.Begin(),
            InnerTxnBuilder.SetFields({
                TxnField.type_enum: TxnType.Payment,
                TxnField.receiver:  App.globalGet(owner),
                TxnField.amount:    payout.load(),
                TxnField.fee:       Int(0),
            }),
            InnerTxnBuilder.Submit(),
            App.globalPut(released, Int(1)),
        )

    # Create: args = goal, owner address, deadline
    on_create = Seq(
        Assert(Txn.application_args.length() == Int(3)),
        Assert(Len(Txn.application_args[1]) == Int(32)),
        App.globalPut(goal,        Btoi(Txn.application_args[0])),
        App.globalPut(owner,             Txn.application_args[1]),
        App.globalPut(deadline_ts, Btoi(Txn.application_args[2])),
        App.globalPut(admin, sender),
        App.globalPut(start_ts, now),
        App.globalPut(raised, Int(0)),
        App.globalPut(active, Int(1)),
        App.globalPut(completed, Int(0)),
        App.globalPut(released, Int(0)),
        App.globalPut(contributors, Int(0)),
        Approve(),
    )

    # Contribute: must follow a Payment to the app from the same sender
    payment = Gtxn[Txn.group_index() - Int(1)]
    box_contrib = App.box_get(sender)

    on_contribute = Seq(
        Assert(App.globalGet(active) == Int(1)),
        Assert(App.globalGet(completed) == Int(0)),
        Assert(now <= App.globalGet(deadline_ts)),
        Assert(Txn.group_index() > Int(0)),

        Assert(payment.type_enum() == TxnType.Payment),
        Assert(payment.receiver()  == Global.current_application_address()),
        Assert(payment.sender()    == sender),

        box_contrib,
        If(box_contrib.hasValue()).Then(
            App.box_put(sender, Itob(Btoi(box_contrib.value()) + payment.amount()))
        ).Else(Seq(
            App.box_put(sender, Itob(payment.amount())),
            App.globalPut(contributors, App.globalGet(contributors) + Int(1)),
        )),

        App.globalPut(raised, App.globalGet(raised) + payment.amount()),
        If(App.globalGet(raised) >= App.globalGet(goal)).Then(Seq(
            App.globalPut(completed, Int(1)),
            release_to_owner(),
        )),
        Approve(),
    )

    # set_active: admin toggles whether the app accepts contributions
    on_set_active = Seq(
        Assert(sender == App.globalGet(admin)),
        Assert(Txn.application_args.length() == Int(2)),
        App.globalPut(active, Btoi(Txn.application_args[1])),
        Approve(),
    )

    # Claim refund: after deadline & not completed, return contribution, then zero out box
    box_refund    = App.box_get(sender)
    amount_refund = ScratchVar(TealType.uint64)

    on_claim_refund = Seq(
        Assert(now > App.globalGet(deadline_ts)),
        Assert(App.globalGet(completed) == Int(0)),

        box_refund,
        Assert(box_refund.hasValue()),
        amount_refund.store(Btoi(box_refund.value())),
        Assert(amount_refund.load() > Int(0)),

        InnerTxnBuilder.Begin(),
        InnerTxnBuilder.SetFields({
            TxnField.type_enum: TxnType.Payment,
            TxnField.receiver:  sender,
            TxnField.amount:    amount_refund.load(),
            TxnField.fee:       Int(0),
        }),
        InnerTxnBuilder.Submit(),

        App.box_put(sender, Itob(Int(0))),
        Approve(),
    )

    program = Cond(
        [Txn.application_id() == Int(0), on_create],
        [Txn.on_completion() == OnComplete.DeleteApplication, Reject()],
        [Txn.on_completion() == OnComplete.UpdateApplication, Reject()],
        [Txn.on_completion() == OnComplete.NoOp, Cond(
            [Txn.application_args[0] == Bytes("contribute"),   on_contribute],
            [Txn.application_args[0] == Bytes("set_active"),   on_set_active],
            [Txn.application_args[0] == Bytes("claim_refund"), on_claim_refund],
        )],
    )
    return program


def get_clear():
    return Return(Int(1))
