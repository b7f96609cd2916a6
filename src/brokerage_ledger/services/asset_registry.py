"""Symbol to asset resolution."""

from collections.abc import Mapping
from uuid import UUID

from brokerage_ledger.domain.assets import Asset, normalize_symbol
from brokerage_ledger.logging_config import get_logger
from brokerage_ledger.repositories.interfaces import AssetRepository

logger = get_logger(__name__)


class AssetRegistry:
    """Idempotent AssetIdentity backed by an optional repository.

    Symbols are normalized (case and whitespace) before lookup, so " spy "
    and "SPY" resolve to the same asset. Aliases map alternate spellings
    onto a canonical symbol, e.g. {"BRK B": "BRK.B"}.
    """

    def __init__(
        self,
        repository: AssetRepository | None = None,
        aliases: Mapping[str, str] | None = None,
    ) -> None:
        self._repository = repository
        self._aliases = {
            normalize_symbol(alias): normalize_symbol(canonical)
            for alias, canonical in (aliases or {}).items()
        }
        self._cache: dict[str, Asset] = {}

    def canonical_symbol(self, symbol: str) -> str:
        normalized = normalize_symbol(symbol)
        return self._aliases.get(normalized, normalized)

    def resolve(self, symbol: str) -> UUID:
        return self.get_or_create(symbol).id

    def get_or_create(self, symbol: str) -> Asset:
        key = self.canonical_symbol(symbol)
        if not key:
            raise ValueError("Cannot resolve an empty symbol")

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        asset = self._repository.get_by_symbol(key) if self._repository else None
        if asset is None:
            asset = Asset(symbol=key)
            if self._repository is not None:
                self._repository.add(asset)
            logger.debug("asset_registered", symbol=key, asset_id=str(asset.id))
        self._cache[key] = asset
        return asset

    def get(self, asset_id: UUID) -> Asset | None:
        for asset in self._cache.values():
            if asset.id == asset_id:
                return asset
        if self._repository is not None:
            return self._repository.get(asset_id)
        return None

    @property
    def known_symbols(self) -> list[str]:
        return sorted(self._cache)
