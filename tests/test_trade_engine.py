from decimal import Decimal

from models import STATUS_EXCLUDED, STATUS_PROCESSED, ChainRate, RateChain
from trade_engine import InMemoryLedger, process_trade
from tests.utils.fakes import make_trade


CLIENT = 100
SUB = 2
MASTER = 1


def _two_level_chain():
    return RateChain(
        broker_id=SUB,
        group_id="7",
        own_rate=Decimal("1.0"),
        ancestors=[ChainRate(broker_id=MASTER, rate=Decimal("2.5"))],
    )


def test_single_broker_chain():
    ledger = InMemoryLedger()
    chain = RateChain(broker_id=SUB, group_id="7", own_rate=Decimal("2.0"))

    result = process_trade(make_trade(5001), CLIENT, chain, ledger, pip_value=Decimal("10"))

    assert result["posted"] == 1
    assert ledger.balance(SUB) == Decimal("30.00")
    assert len(ledger.journal) == 1
    assert ledger.journal[0].status == STATUS_PROCESSED
    assert ledger.journal[0].is_override is False


def test_two_level_chain_distribution():
    ledger = InMemoryLedger()

    result = process_trade(make_trade(5002), CLIENT, _two_level_chain(), ledger, pip_value=Decimal("10"))

    assert result["posted"] == 2
    assert result["credited"] == Decimal("37.50")
    assert ledger.balance(SUB) == Decimal("15.00")
    assert ledger.balance(MASTER) == Decimal("22.50")

    master_entry = ledger.entries_for(MASTER)[0]
    assert master_entry.pip_rate == Decimal("1.5")
    assert master_entry.is_override is True
    assert master_entry.commission_level == 1
    assert ledger.entries_for(SUB)[0].commission_level == 2

    # posted deepest first
    assert [e.ib_id for e in ledger.journal] == [SUB, MASTER]


def test_short_trade_pays_nobody_but_is_recorded():
    ledger = InMemoryLedger()

    result = process_trade(make_trade(5003, seconds=45), CLIENT, _two_level_chain(), ledger)

    assert result["posted"] == 2
    assert result["excluded"] == 2
    for entry in ledger.journal:
        assert entry.status == STATUS_EXCLUDED
        assert entry.commission_amount == Decimal("0")
        assert entry.exclusion_reason == "trade duration <= 60 seconds"
        assert entry.duration_seconds == 45
    assert ledger.balances == {}


def test_reprocessing_same_trade_is_a_no_op():
    ledger = InMemoryLedger()
    trade = make_trade(5004)

    process_trade(trade, CLIENT, _two_level_chain(), ledger, pip_value=Decimal("10"))
    again = process_trade(trade, CLIENT, _two_level_chain(), ledger, pip_value=Decimal("10"))

    assert again["posted"] == 0
    assert again["duplicates"] == 2
    assert len(ledger.journal) == 2
    assert ledger.balance(SUB) == Decimal("15.00")
    assert ledger.balance(MASTER) == Decimal("22.50")


def test_broker_trading_own_account_earns_nothing_from_it():
    ledger = InMemoryLedger()

    process_trade(make_trade(5005), SUB, _two_level_chain(), ledger, pip_value=Decimal("10"))

    sub_entry = ledger.entries_for(SUB)[0]
    assert sub_entry.status == STATUS_EXCLUDED
    assert sub_entry.exclusion_reason == "self-trade"
    assert ledger.balance(SUB) == Decimal("0")
    # the master above still earns its differential
    assert ledger.balance(MASTER) == Decimal("22.50")


def test_inactive_ancestor_gets_no_entry():
    ledger = InMemoryLedger()
    chain = RateChain(
        broker_id=SUB,
        group_id="7",
        own_rate=Decimal("1.0"),
        ancestors=[
            ChainRate(broker_id=50, rate=Decimal("0"), active=False),
            ChainRate(broker_id=MASTER, rate=Decimal("2.5")),
        ],
    )

    process_trade(make_trade(5006), CLIENT, chain, ledger, pip_value=Decimal("10"))

    assert {e.ib_id for e in ledger.journal} == {SUB, MASTER}
    assert ledger.balance(MASTER) == Decimal("22.50")


class _FlakyLedger(InMemoryLedger):
    def post(self, entry):
        if entry.ib_id == SUB:
            raise RuntimeError("connection reset")
        return super().post(entry)


def test_failed_write_does_not_block_other_participants():
    ledger = _FlakyLedger()

    result = process_trade(make_trade(5007), CLIENT, _two_level_chain(), ledger, pip_value=Decimal("10"))

    assert result["failed"] == 1
    assert result["posted"] == 1
    assert ledger.balance(MASTER) == Decimal("22.50")
