from __future__ import annotations

import math
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .config import ScrapingConfig
from .models import CostAnalysis

# Assumed processing time per account on top of the inter-request delay.
PROCESSING_SECONDS_PER_ACCOUNT = 5.0
DAYS_PER_MONTH = 30


class CostOptimizer:
    """Budget arithmetic and the process-wide spend ledger.

    analyze_costs() and friends are pure functions of the configuration.
    The ledger (record_spend / can_afford) is the budget check applied before
    every paid call, so spending never runs past the daily or monthly ceiling.
    """

    def __init__(self, config: ScrapingConfig, clock: Callable[[], float] = time.time) -> None:
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._daily_spend: Dict[str, float] = {}
        self._monthly_spend: Dict[str, float] = {}

    @property
    def config(self) -> ScrapingConfig:
        return self._config

    def analyze_costs(self, total_accounts: int) -> CostAnalysis:
        cfg = self._config
        within_daily_budget = _affordable(cfg.daily_budget_limit, cfg.cost_per_account)
        accounts = max(0, min(total_accounts, within_daily_budget, cfg.max_daily_accounts))

        daily_cost = round(accounts * cfg.cost_per_account, 6)
        monthly_cost = round(daily_cost * DAYS_PER_MONTH, 6)
        utilization = (daily_cost / cfg.daily_budget_limit * 100) if cfg.daily_budget_limit > 0 else 0.0

        savings: List[str] = []
        if cfg.use_reduced_data:
            savings.append("Using reduced-data profile requests for lower cost per account")
        if cfg.skip_recently_scraped:
            savings.append("Skipping recently scraped accounts to avoid duplicate costs")
        if cfg.prioritize_owned_accounts:
            savings.append("Prioritizing owned accounts so budget goes to the most relevant profiles")

        return CostAnalysis(
            total_eligible_accounts=total_accounts,
            accounts_within_budget=accounts,
            estimated_daily_cost=daily_cost,
            estimated_monthly_cost=monthly_cost,
            budget_utilization=round(utilization, 2),
            recommended_account_limit=within_daily_budget,
            savings_opportunities=tuple(savings),
        )

    def get_optimal_session_params(self, total_accounts: int) -> Dict[str, object]:
        analysis = self.analyze_costs(total_accounts)
        accounts = min(analysis.accounts_within_budget, self._config.max_accounts_per_session)
        per_account = self._config.inter_request_delay + PROCESSING_SECONDS_PER_ACCOUNT
        return {
            "accounts_to_scrape": accounts,
            "delay_between_requests": self._config.inter_request_delay,
            "estimated_duration_minutes": accounts * per_account / 60.0,
            "estimated_cost": round(accounts * self._config.cost_per_account, 6),
            "use_reduced_data": self._config.use_reduced_data,
        }

    def should_skip_account(self, last_scraped_at: Optional[float]) -> bool:
        """True when the account was scraped more recently than the freshness threshold."""
        if not self._config.skip_recently_scraped or last_scraped_at is None:
            return False
        hours_since = (self._clock() - last_scraped_at) / 3600.0
        return hours_since < self._config.minimum_hours_between_scrapes

    def get_cost_savings_recommendations(self, current_spending: float) -> List[str]:
        cfg = self._config
        recommendations: List[str] = []
        if current_spending > cfg.daily_budget_limit * 0.8:
            recommendations.append("Consider reducing daily account limit to stay within budget")
            recommendations.append("Enable reduced-data mode to reduce cost per account")
            recommendations.append("Increase minimum hours between scrapes to reduce frequency")
        if not cfg.use_reduced_data and current_spending > cfg.daily_budget_limit * 0.5:
            recommendations.append("Switch to reduced-data requests for roughly half the cost per account")
        if not cfg.skip_recently_scraped:
            recommendations.append("Enable 'skip recently scraped' to avoid duplicate costs")
        if cfg.inter_request_delay < 2.0:
            recommendations.append("Increase delay between requests to improve success rate and reduce retries")
        return recommendations

    # Spend ledger

    def can_afford(self, request_units: Optional[int] = None) -> bool:
        units = self._config.units_per_account if request_units is None else request_units
        cost = units * self._config.cost_per_unit
        with self._lock:
            day_key, month_key = self._keys()
            daily = self._daily_spend.get(day_key, 0.0)
            monthly = self._monthly_spend.get(month_key, 0.0)
        # Small tolerance so float accumulation never blocks the last affordable call.
        return (
            daily + cost <= self._config.daily_budget_limit + 1e-9
            and monthly + cost <= self._config.monthly_budget_limit + 1e-9
        )

    def record_spend(self, request_units: int) -> float:
        """Add the cost of ``request_units`` to today's and this month's totals; returns the cost."""
        cost = request_units * self._config.cost_per_unit
        with self._lock:
            day_key, month_key = self._keys()
            self._daily_spend[day_key] = self._daily_spend.get(day_key, 0.0) + cost
            self._monthly_spend[month_key] = self._monthly_spend.get(month_key, 0.0) + cost
        return cost

    def spent_today(self) -> float:
        with self._lock:
            return self._daily_spend.get(self._keys()[0], 0.0)

    def remaining_daily_budget(self) -> float:
        return max(0.0, self._config.daily_budget_limit - self.spent_today())

    def _keys(self) -> tuple[str, str]:
        now = datetime.fromtimestamp(self._clock())
        return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")


def _affordable(budget: float, unit_cost: float) -> int:
    if budget <= 0 or unit_cost <= 0:
        return 0
    # Round before flooring: 0.01 / 0.002 must give 5, not 4.
    return int(math.floor(round(budget / unit_cost, 9)))
