import pytest

from src.openrisk.schema import Position, Security


def make_position(symbol, acc, qty, price, sector="", currency="USD", acc_name=None, avg_px=None, **extra):
    return Position(
        security=Security(symbol=symbol, sector=sector, currency=currency),
        acc=acc,
        acc_name=acc_name if acc_name is not None else f"acc{acc}",
        qty=qty,
        avg_px=price if avg_px is None else avg_px,
        market_price=price,
        extra=extra,
    )


@pytest.fixture
def positions():
    """
    Two Tech names and one Energy name across two accounts.

    notional: AAPL 1000, MSFT 3000, XOM 500
    """
    return [
        make_position("AAPL", 1, 10, 100.0, sector="Tech"),
        make_position("MSFT", 2, 10, 300.0, sector="Tech"),
        make_position("XOM", 1, 5, 100.0, sector="Energy"),
    ]


@pytest.fixture
def position_factory():
    return make_position
