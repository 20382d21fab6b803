from __future__ import annotations

from dataclasses import dataclass

BITCOIN = "bitcoin"
ETHEREUM = "ethereum"
COINS = (BITCOIN, ETHEREUM)


@dataclass(frozen=True)
class CoinMetadata:
    name: str
    symbol: str


COIN_METADATA: dict[str, CoinMetadata] = {
    BITCOIN: CoinMetadata(name="Bitcoin", symbol="BTC"),
    ETHEREUM: CoinMetadata(name="Ethereum", symbol="ETH"),
}


def normalize_coin(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in COIN_METADATA:
        raise ValueError(f"Unsupported coin: {value.strip()}")
    return normalized
