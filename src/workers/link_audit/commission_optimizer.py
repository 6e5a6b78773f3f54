"""
Commission Optimizer
====================
Compares a link's current affiliate program against a rate table and
suggests the best-paying alternative for the same product category.

    gain = monthly_clicks × conversion_rate × average_order_value
           × (best_rate − current_rate) / 100

An unknown current rate counts as 0. Opportunities under
``min_monthly_gain`` are suppressed. The threshold is inclusive and is
applied before the gain is rounded to cents: $10.00 is reported,
$9.996 is not.

The rate table and category keywords are injected, so they can be
refreshed from the database without touching this module.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from workers.link_audit.models import CommissionOpportunity, TrackedLink

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "default"

# Percent commission per retailer and category.
DEFAULT_COMMISSION_RATES: dict[str, dict[str, float]] = {
    "amazon": {"electronics": 4.0, "home": 3.0, "fashion": 10.0, "beauty": 8.0, "default": 4.0},
    "target": {"electronics": 1.0, "home": 1.0, "fashion": 8.0, "beauty": 5.0, "default": 1.0},
    "walmart": {"electronics": 1.0, "home": 4.0, "fashion": 1.0, "beauty": 1.0, "default": 1.0},
    "bestbuy": {"electronics": 1.0, "home": 0.5, "default": 1.0},
    "shopify-store": {"default": 10.0},
}

# Checked in order; the first category with a matching keyword wins.
DEFAULT_CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "electronics": ("laptop", "phone", "camera", "tv", "headphones"),
    "fashion": ("dress", "shoes", "jacket", "shirt"),
    "beauty": ("makeup", "skincare", "perfume", "beauty"),
    "home": ("furniture", "decor", "kitchen", "bedding"),
}


class RateTable:
    """Retailer → category → commission percent."""

    def __init__(self, rates: Mapping[str, Mapping[str, float]] | None = None) -> None:
        source = DEFAULT_COMMISSION_RATES if rates is None else rates
        self._rates: dict[str, dict[str, float]] = {
            retailer.lower(): {cat.lower(): float(rate) for cat, rate in by_cat.items()}
            for retailer, by_cat in source.items()
        }

    @classmethod
    def from_rows(cls, rows: Iterable[tuple[str, str, float]]) -> RateTable:
        rates: dict[str, dict[str, float]] = {}
        for retailer, category, rate in rows:
            rates.setdefault(retailer.lower(), {})[category.lower()] = float(rate)
        return cls(rates)

    @property
    def retailers(self) -> list[str]:
        return list(self._rates)

    def __contains__(self, retailer: str) -> bool:
        return retailer.lower() in self._rates

    def __len__(self) -> int:
        return len(self._rates)

    def rate_for(self, retailer: str, category: str = DEFAULT_CATEGORY) -> float | None:
        """Category rate, else the retailer's default rate; None for an unknown retailer."""
        by_cat = self._rates.get(retailer.lower())
        if by_cat is None:
            return None
        if category.lower() in by_cat:
            return by_cat[category.lower()]
        return by_cat.get(DEFAULT_CATEGORY, 0.0)

    def rows(self) -> list[tuple[str, str, float]]:
        return [(r, c, rate) for r, by_cat in self._rates.items() for c, rate in by_cat.items()]


@dataclass(frozen=True, slots=True)
class OptimizerConfig:
    conversion_rate: float = 0.03
    average_order_value: float = 50.0
    min_monthly_clicks: int = 10
    min_monthly_gain: float = 10.0
    category_keywords: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_CATEGORY_KEYWORDS)
    )


def detect_category(
    product_name: str | None,
    keywords: Mapping[str, Iterable[str]] = DEFAULT_CATEGORY_KEYWORDS,
) -> str:
    if not product_name:
        return DEFAULT_CATEGORY
    lower = product_name.lower()
    for category, words in keywords.items():
        if any(word in lower for word in words):
            return category
    return DEFAULT_CATEGORY


class CommissionOptimizer:
    """
    Finds better-paying programs for a link.

    Usage:
        optimizer = CommissionOptimizer(RateTable(), OptimizerConfig())
        opp = optimizer.evaluate(link_id=1, retailer="target", category="fashion",
                                 current_rate=1.0, total_clicks=100)
    """

    def __init__(self, rate_table: RateTable | None = None, config: OptimizerConfig | None = None) -> None:
        self.rate_table = rate_table or RateTable()
        self.config = config or OptimizerConfig()

    def estimate_monthly_clicks(self, total_clicks: int) -> int:
        return max(total_clicks or 0, self.config.min_monthly_clicks)

    def find_better_options(self, retailer: str, category: str, current_rate: float) -> list[tuple[str, float]]:
        """Other retailers paying strictly more, best first."""
        current = retailer.lower()
        options = []
        for candidate in self.rate_table.retailers:
            if candidate == current:
                continue
            rate = self.rate_table.rate_for(candidate, category) or 0.0
            if rate > current_rate:
                options.append((candidate, rate))
        return sorted(options, key=lambda option: (-option[1], option[0]))

    def estimate_gain(self, monthly_clicks: int, current_rate: float, suggested_rate: float) -> float:
        orders_value = monthly_clicks * self.config.conversion_rate * self.config.average_order_value
        return orders_value * (suggested_rate - current_rate) / 100

    def evaluate(
        self,
        link_id: int | None,
        retailer: str | None,
        *,
        category: str | None = None,
        current_rate: float | None = None,
        total_clicks: int = 0,
        product_name: str | None = None,
        owner_id: str = "",
    ) -> CommissionOpportunity | None:
        if not retailer:
            return None

        category = (category or detect_category(product_name, self.config.category_keywords)).lower()
        current_rate = current_rate or 0.0

        options = self.find_better_options(retailer, category, current_rate)
        if not options:
            return None

        best_retailer, best_rate = options[0]
        gain = self.estimate_gain(self.estimate_monthly_clicks(total_clicks), current_rate, best_rate)
        if gain < self.config.min_monthly_gain:
            logger.debug(
                "Link %s: %s pays more than %s but gain $%.2f is under $%.2f",
                link_id, best_retailer, retailer, gain, self.config.min_monthly_gain,
            )
            return None

        return CommissionOpportunity(
            link_id=link_id,
            owner_id=owner_id,
            current_retailer=retailer,
            current_rate=float(current_rate),
            suggested_retailer=best_retailer,
            suggested_rate=float(best_rate),
            category=category,
            estimated_monthly_gain=round(gain, 2),
            reasoning=(
                f"{best_retailer} offers {float(best_rate)}% commission for {category} products "
                f"vs {float(current_rate)}% at {retailer}"
            ),
        )

    def evaluate_link(self, link: TrackedLink) -> CommissionOpportunity | None:
        return self.evaluate(
            link.id,
            link.retailer,
            category=link.category,
            current_rate=link.commission_rate,
            total_clicks=link.total_clicks,
            product_name=link.product_name,
            owner_id=link.owner_id,
        )
