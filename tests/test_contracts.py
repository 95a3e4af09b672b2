from datetime import date

import pytest

from trade_mirror.contracts import compute_pnl, contract_spec, front_month_symbol, root_symbol
from trade_mirror.models import Direction


@pytest.mark.parametrize(
    "today, expected",
    [
        (date(2026, 10, 14), "ESZ6"),
        (date(2026, 12, 1), "ESZ6"),
        (date(2027, 1, 5), "ESH7"),
        (date(2026, 4, 20), "ESM6"),
    ],
)
def test_front_month(today, expected):
    assert front_month_symbol("ES", today) == expected


def test_front_month_strips_an_existing_suffix():
    assert front_month_symbol("MNQH6", date(2026, 7, 1)) == "MNQU6"


def test_root_symbol():
    assert root_symbol("ESZ6") == "ES"
    assert root_symbol("esz26") == "ES"
    assert root_symbol("MES") == "MES"
    assert root_symbol("SPY") == "SPY"


def test_unknown_symbols_fall_back_to_es_contract():
    assert contract_spec("XYZ").root == "ES"
    assert contract_spec("CLX6").tick_value == 10.0


def test_pnl_from_ticks():
    assert compute_pnl(Direction.LONG, 5880.0, 5892.0, 1, "ES") == 600.0
    assert compute_pnl(Direction.SHORT, 5880.0, 5892.0, 2, "ES") == -1200.0
    assert compute_pnl(Direction.LONG, 21000.0, 21010.0, 1, "MNQ") == 20.0
    assert compute_pnl(Direction.SHORT, 71.50, 71.25, 1, "CL") == 250.0
