from models import STATUS_EXCLUDED, STATUS_PROCESSED
from trade_validator import validate_trade
from tests.utils.fakes import make_trade


def test_long_enough_trade_is_processed():
    result = validate_trade(make_trade(1, seconds=61), earner_id=10, client_id=20)

    assert result.status == STATUS_PROCESSED
    assert result.reason is None
    assert result.duration_seconds == 61
    assert result.eligible


def test_exactly_sixty_seconds_is_excluded():
    result = validate_trade(make_trade(1, seconds=60), earner_id=10, client_id=20)

    assert result.status == STATUS_EXCLUDED
    assert result.reason == "trade duration <= 60 seconds"


def test_short_trade_excluded():
    result = validate_trade(make_trade(1, seconds=45), earner_id=10, client_id=20)

    assert not result.eligible
    assert result.duration_seconds == 45


def test_self_trade_excluded_even_when_long():
    result = validate_trade(make_trade(1, seconds=3600), earner_id=10, client_id=10)

    assert result.status == STATUS_EXCLUDED
    assert result.reason == "self-trade"


def test_self_trade_wins_over_short_duration():
    result = validate_trade(make_trade(1, seconds=5), earner_id=10, client_id=10)
    assert result.reason == "self-trade"


def test_custom_minimum_duration():
    result = validate_trade(make_trade(1, seconds=90), earner_id=10, client_id=20, min_duration_seconds=120)

    assert result.reason == "trade duration <= 120 seconds"
