"""
Plan registry: the static catalog of offerable plans.

Loaded once at process start from config/plans.yml and immutable thereafter.
The registry is an explicit instance passed to the normalizer, reconciler,
membership service and session initiator; there is no module-level singleton.

Usage:
    from paygate.config.plans import load_plan_registry

    registry = load_plan_registry()
    plan = registry.get("pro")
    registry.default_plan.id  # "free"
"""

import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import yaml

from paygate.billing.errors import PlanConfigError, PlanNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_DAYS = 14


@dataclass(frozen=True)
class Plan:
    """One offerable plan."""
    id: str
    name: str
    price_id: Optional[str] = None
    free: bool = False
    trial: bool = False
    trial_days: int = 0
    default: bool = False
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PlanRegistry:
    """
    Validated, immutable collection of plans.

    Invariants (checked on construction, PlanConfigError otherwise):
    - at least one plan, unique plan ids, unique price ids
    - at most one default plan; the first plan is the implicit default
    - free and trial are mutually exclusive
    - every non-free plan has a price_id
    """

    def __init__(self, plans: Iterable[Plan]):
        plans = tuple(plans)
        self._validate(plans)
        self._plans: Tuple[Plan, ...] = plans
        self._by_id: Dict[str, Plan] = {p.id: p for p in plans}
        self._by_price: Dict[str, Plan] = {p.price_id: p for p in plans if p.price_id}
        defaults = [p for p in plans if p.default]
        self._default = defaults[0] if defaults else plans[0]

    @staticmethod
    def _validate(plans: Tuple[Plan, ...]) -> None:
        if not plans:
            raise PlanConfigError("Plan registry must contain at least one plan")

        seen_ids = set()
        seen_prices = set()
        for plan in plans:
            if not plan.id:
                raise PlanConfigError("Plan id is required")
            if plan.id in seen_ids:
                raise PlanConfigError(f"Duplicate plan id: {plan.id}")
            seen_ids.add(plan.id)

            if plan.free and plan.trial:
                raise PlanConfigError(f"Plan {plan.id} cannot be both free and trial")
            if not plan.free and not plan.price_id:
                raise PlanConfigError(f"Paid plan {plan.id} requires a price_id")
            if plan.trial and plan.trial_days <= 0:
                raise PlanConfigError(f"Trial plan {plan.id} requires positive trial_days")

            if plan.price_id:
                if plan.price_id in seen_prices:
                    raise PlanConfigError(f"Duplicate price_id: {plan.price_id}")
                seen_prices.add(plan.price_id)

        default_count = sum(1 for p in plans if p.default)
        if default_count > 1:
            raise PlanConfigError(f"At most one default plan allowed, found {default_count}")

    def get(self, plan_id: str) -> Plan:
        try:
            return self._by_id[plan_id]
        except KeyError:
            raise PlanNotFoundError(f"Plan not found: {plan_id}") from None

    def has(self, plan_id: Optional[str]) -> bool:
        return plan_id is not None and plan_id in self._by_id

    def plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    @property
    def default_plan(self) -> Plan:
        return self._default

    def list_plans(self) -> List[Dict[str, Any]]:
        """Read-only dump of the catalog in registration order."""
        return [p.to_dict() for p in self._plans]

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans)

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._by_id


def _plan_from_config(entry: Dict[str, Any]) -> Plan:
    if not isinstance(entry, dict):
        raise PlanConfigError(f"Plan entry must be a mapping, got {type(entry).__name__}")

    plan_id = entry.get("id")
    trial = bool(entry.get("trial", False))
    trial_days = entry.get("trial_days")
    if trial_days is None:
        trial_days = DEFAULT_TRIAL_DAYS if trial else 0

    return Plan(
        id=str(plan_id) if plan_id is not None else "",
        name=str(entry.get("name") or plan_id or ""),
        price_id=entry.get("price_id"),
        free=bool(entry.get("free", False)),
        trial=trial,
        trial_days=int(trial_days),
        default=bool(entry.get("default", False)),
        description=entry.get("description"),
    )


def _resolve_path(config_path: Optional[str]) -> Path:
    if config_path:
        return Path(config_path)

    env_path = os.getenv("PAYGATE_PLANS_CONFIG")
    if env_path:
        return Path(env_path)

    candidates = [
        Path(__file__).parent.parent.parent / "config" / "plans.yml",
        Path(os.getcwd()) / "config" / "plans.yml",
        Path(os.getcwd()) / "backend" / "config" / "plans.yml",
    ]
    for p in candidates:
        resolved = p.resolve()
        if resolved.exists():
            return resolved

    raise PlanConfigError(
        f"plans.yml not found in: {[str(p) for p in candidates]}"
    )


def load_plan_registry(config_path: Optional[str] = None) -> PlanRegistry:
    """
    Build a PlanRegistry from a YAML file.

    Args:
        config_path: Explicit path. Falls back to PAYGATE_PLANS_CONFIG,
            then config/plans.yml next to the backend package.

    Raises:
        PlanConfigError: file missing, unparseable or invalid
    """
    path = _resolve_path(config_path)
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise PlanConfigError(f"Plan config not found: {path}") from None
    except yaml.YAMLError as e:
        raise PlanConfigError(f"Invalid YAML in {path}: {e}") from e

    entries = raw.get("plans") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise PlanConfigError(f"{path} must define a 'plans' list")

    registry = PlanRegistry(_plan_from_config(entry) for entry in entries)
    logger.info(
        "Loaded plan registry from %s: plans=%s default=%s",
        path,
        [p.id for p in registry],
        registry.default_plan.id,
    )
    return registry
