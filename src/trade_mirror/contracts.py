"""Futures contract specs, front-month resolution and tick-based P&L."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from .models import Direction


@dataclass(frozen=True)
class ContractSpec:
    root: str
    tick_size: float
    tick_value: float
    description: str = ""

    @property
    def point_value(self) -> float:
        return self.tick_value / self.tick_size


CONTRACT_SPECS: dict[str, ContractSpec] = {
    spec.root: spec
    for spec in [
        ContractSpec("ES", 0.25, 12.50, "E-mini S&P 500"),
        ContractSpec("MES", 0.25, 1.25, "Micro E-mini S&P 500"),
        ContractSpec("NQ", 0.25, 5.00, "E-mini Nasdaq-100"),
        ContractSpec("MNQ", 0.25, 0.50, "Micro E-mini Nasdaq-100"),
        ContractSpec("RTY", 0.10, 5.00, "E-mini Russell 2000"),
        ContractSpec("M2K", 0.10, 0.50, "Micro E-mini Russell 2000"),
        ContractSpec("YM", 1.00, 5.00, "E-mini Dow"),
        ContractSpec("MYM", 1.00, 0.50, "Micro E-mini Dow"),
        ContractSpec("CL", 0.01, 10.00, "Crude Oil"),
        ContractSpec("MCL", 0.01, 1.00, "Micro Crude Oil"),
        ContractSpec("GC", 0.10, 10.00, "Gold"),
        ContractSpec("MGC", 0.10, 1.00, "Micro Gold"),
        ContractSpec("SI", 0.005, 25.00, "Silver"),
        ContractSpec("ZB", 1 / 32, 31.25, "30-Year T-Bond"),
    ]
}
DEFAULT_SPEC = CONTRACT_SPECS["ES"]

MONTH_CODES = "FGHJKMNQUVXZ"
QUARTERLY_MONTHS = (3, 6, 9, 12)


def root_symbol(symbol: str) -> str:
    """Strip a month/year suffix, so ESZ6 and ESZ26 both give ES."""
    cleaned = symbol.strip().upper()
    if cleaned in CONTRACT_SPECS:
        return cleaned
    for length in (2, 3):
        suffix = cleaned[-length:]
        if len(cleaned) > length and suffix[0] in MONTH_CODES and suffix[1:].isdigit():
            candidate = cleaned[:-length]
            if candidate in CONTRACT_SPECS:
                return candidate
    return cleaned


def contract_spec(symbol: str) -> ContractSpec:
    return CONTRACT_SPECS.get(root_symbol(symbol), DEFAULT_SPEC)


def compute_pnl(direction: Direction, entry_price: float, exit_price: float, size: float, symbol: str = "ES") -> float:
    spec = contract_spec(symbol)
    ticks = (exit_price - entry_price) * direction.sign / spec.tick_size
    return round(ticks * spec.tick_value * size, 2)


def front_month_code(today: date) -> tuple[int, int]:
    """Nearest quarterly (H, M, U, Z) month on or after today's month, as (year, month)."""
    for month in QUARTERLY_MONTHS:
        if month >= today.month:
            return today.year, month
    return today.year + 1, QUARTERLY_MONTHS[0]


def front_month_symbol(root: str, today: date) -> str:
    year, month = front_month_code(today)
    return f"{root_symbol(root)}{MONTH_CODES[month - 1]}{year % 10}"
