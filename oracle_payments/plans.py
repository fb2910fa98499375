from dataclasses import dataclass
from typing import Dict, Optional

from oracle_payments.errors import CustomPricingRequired


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    monthly_price: Optional[int]   # minor units, None = priced by sales
    annual_price: Optional[int]
    currency: str = "USD"

    def price_for(self, billing_cycle: str) -> int:
        price = self.annual_price if billing_cycle == "annual" else self.monthly_price
        if price is None:
            raise CustomPricingRequired(f"{self.name} is priced on request. Please contact sales.")
        return price


PLANS: Dict[str, Plan] = {
    "free": Plan("free", "Free Tier", 0, 0),
    "developer": Plan("developer", "Developer Tier", 5000, 50000),
    "professional": Plan("professional", "Professional Tier", 10000, 100000),
    "enterprise": Plan("enterprise", "Enterprise Tier", None, None),
}


def get_plan(plan_id: str) -> Plan:
    try:
        return PLANS[plan_id]
    except KeyError:
        raise KeyError(f"Unknown plan: {plan_id}")
