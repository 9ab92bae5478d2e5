"""Per-model token pricing used to cost a finished agent run."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelRates:
    """USD per million tokens."""
    input_per_million: float
    output_per_million: float


DEFAULT_PRICING: dict[str, ModelRates] = {
    "opus": ModelRates(input_per_million=15.0, output_per_million=75.0),
    "sonnet": ModelRates(input_per_million=3.0, output_per_million=15.0),
}


class PriceTable:
    """Maps a model family (substring of the model id) to its rates.

    Models that match no family are costed at the cheapest entry.
    """

    def __init__(self, rates: Mapping[str, ModelRates] | None = None) -> None:
        self._rates = dict(rates if rates is not None else DEFAULT_PRICING)
        if not self._rates:
            raise ValueError("PriceTable needs at least one model family")
        self._fallback = min(
            self._rates.values(),
            key=lambda r: (r.input_per_million, r.output_per_million),
        )

    @property
    def families(self) -> list[str]:
        return list(self._rates)

    def rates_for(self, model: str | None) -> ModelRates:
        if model:
            lowered = model.lower()
            for family, rates in self._rates.items():
                if family in lowered:
                    return rates
        return self._fallback

    def cost(self, model: str | None, input_tokens: int, output_tokens: int) -> float:
        rates = self.rates_for(model)
        total = (
            input_tokens * rates.input_per_million
            + output_tokens * rates.output_per_million
        ) / 1_000_000
        return round(total, 4)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> PriceTable:
        """Build from ``{family: {input: x, output: y}}`` (YAML ``pricing:``)."""
        if not raw:
            return cls()
        rates: dict[str, ModelRates] = {}
        for family, entry in raw.items():
            try:
                rates[str(family).lower()] = ModelRates(
                    input_per_million=float(entry["input"]),
                    output_per_million=float(entry["output"]),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring malformed pricing entry for %s: %r", family, entry)
        return cls(rates or None)
