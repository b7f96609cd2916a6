from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID, uuid4

CRYPTO_SYMBOLS = frozenset({"BTC", "ETH", "SOL", "ADA"})


def _utc_now() -> datetime:
    return datetime.now(UTC)


def normalize_symbol(symbol: str) -> str:
    """Upper-case a ticker and collapse surrounding and inner whitespace."""
    return " ".join(symbol.split()).upper()


def quantity_unit_for(symbol: str) -> str:
    normalized = normalize_symbol(symbol)
    return normalized if normalized in CRYPTO_SYMBOLS else "shares"


@dataclass
class Asset:
    symbol: str
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def is_crypto(self) -> bool:
        return self.symbol in CRYPTO_SYMBOLS
