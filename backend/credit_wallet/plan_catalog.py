"""
Plan Catalog - Resolves plan and credit pack keys against the static catalog

Rules:
- Subscription keys look like '<plan>_<monthly|annual>' (e.g. pro_monthly)
- Credit pack keys start with 'pack_' (e.g. pack_basic)
- The catalog is read-only configuration; it never touches user data
"""

from typing import Optional, Tuple, List

from .config import SUBSCRIPTION_PLANS, CREDIT_PACKS, PACK_PREFIX, CURRENCY
from .models import PlanDefinition


def is_pack_key(key: str) -> bool:
    return key.startswith(PACK_PREFIX)


def get_plan(key: str) -> Optional[PlanDefinition]:
    """Look up a subscription plan by catalog key."""
    plan = SUBSCRIPTION_PLANS.get(key)
    if not plan:
        return None
    return PlanDefinition(
        key=key,
        name=plan["name"],
        price=plan["price"],
        credits=plan["credits"],
        interval=plan["interval"],
        plan=plan["plan"],
    )


def get_pack(key: str) -> Optional[PlanDefinition]:
    """Look up a one-time credit pack by catalog key."""
    pack = CREDIT_PACKS.get(key)
    if not pack:
        return None
    return PlanDefinition(
        key=key,
        name=pack["name"],
        price=pack["price"],
        credits=pack["credits"],
    )


def resolve_catalog_item(key: str) -> Optional[PlanDefinition]:
    """Resolve any checkout key (plan or pack) to its definition."""
    if is_pack_key(key):
        return get_pack(key)
    return get_plan(key)


def resolve_plan_state(key: str) -> Tuple[str, Optional[str], int]:
    """
    Resolve a subscription key to the account plan state it grants.

    Returns:
        Tuple of (plan_name, plan_period, credit_grant)

    Raises:
        KeyError if the key is not a known subscription plan
    """
    plan = get_plan(key)
    if plan is None:
        raise KeyError(key)
    return plan.plan, plan.interval, plan.credits


def list_catalog() -> dict:
    """Catalog payload for the pricing page."""
    plans: List[dict] = []
    for key in SUBSCRIPTION_PLANS:
        plans.append(get_plan(key).model_dump(exclude_none=True))
    packs: List[dict] = []
    for key in CREDIT_PACKS:
        packs.append(get_pack(key).model_dump(exclude_none=True))
    return {"plans": plans, "packs": packs, "currency": CURRENCY.upper()}
