from models import (
    REASON_SELF_TRADE,
    REASON_SHORT_TRADE,
    STATUS_EXCLUDED,
    STATUS_PROCESSED,
    Eligibility,
    Trade,
)


MIN_TRADE_DURATION_SECONDS = 60


def validate_trade(
    trade: Trade,
    earner_id: int,
    client_id: int,
    min_duration_seconds: int = MIN_TRADE_DURATION_SECONDS,
) -> Eligibility:
    """
    decide whether `earner_id` may earn on `trade`, before any money is computed.

    rules, in order:
      1) a broker never earns on their own trading (self-trade)
      2) trades held for <= min_duration_seconds pay nobody
    excluded trades are still posted, with a zero amount.
    """
    duration = trade.duration_seconds

    if earner_id == client_id:
        return Eligibility(STATUS_EXCLUDED, REASON_SELF_TRADE, duration)

    if duration <= min_duration_seconds:
        return Eligibility(
            STATUS_EXCLUDED,
            REASON_SHORT_TRADE.format(seconds=min_duration_seconds),
            duration,
        )

    return Eligibility(STATUS_PROCESSED, None, duration)
