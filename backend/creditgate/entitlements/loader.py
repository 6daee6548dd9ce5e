"""
Plan Catalog Loader - Load plan limits and credit packs from config/plans.yml.

Provides:
- PlanLimits: Monthly allowance for one (product, plan) pair
- CreditPack: One-time credit pack definition
- PlanCatalogLoader: Singleton loader for the plan catalog

CRITICAL: This is the source of truth for plan limits.
Do NOT hardcode token allowances elsewhere.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from threading import Lock

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "plans.yml"
FREE_PLAN = "free"


@dataclass(frozen=True)
class PlanLimits:
    """Monthly allowance for a plan on a product."""

    product: str
    plan: str
    tokens: int
    unlimited: bool = False
    price_id: Optional[str] = None


@dataclass(frozen=True)
class CreditPack:
    """One-time credit pack."""

    pack_id: str
    credits: int
    price: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.pack_id, "credits": self.credits, "price": self.price}


class PlanCatalogLoader:
    """
    Singleton loader for the plan catalog.

    Thread-safe with lazy loading and reload support.

    Usage:
        catalog = get_plan_catalog()
        limits = catalog.get_plan_limits("pro", "alttext-ai")
    """

    _instance: Optional['PlanCatalogLoader'] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        """Singleton pattern implementation."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path
        self._plans: Dict[str, Dict[str, PlanLimits]] = {}
        self._packs: Dict[str, CreditPack] = {}
        self._price_index: Dict[str, PlanLimits] = {}
        self._default_product = "alttext-ai"
        self._load_lock = Lock()

        self._load_config()
        self._initialized = True

    def _resolve_config_path(self) -> Path:
        """Resolve the config file path."""
        if self._config_path:
            return Path(self._config_path)

        env_path = os.getenv("PLANS_CONFIG_PATH")
        if env_path:
            return Path(env_path)

        possible_paths = [
            Path(__file__).parent.parent / "config" / DEFAULT_CONFIG_FILENAME,
            Path(os.getcwd()) / "config" / DEFAULT_CONFIG_FILENAME,
            Path(os.getcwd()) / "backend" / "config" / DEFAULT_CONFIG_FILENAME,
        ]

        for path in possible_paths:
            if path.exists():
                return path

        raise FileNotFoundError(
            f"{DEFAULT_CONFIG_FILENAME} not found in any of: {[str(p) for p in possible_paths]}"
        )

    def _load_config(self) -> None:
        """Load and parse the plan catalog."""
        with self._load_lock:
            config_path = self._resolve_config_path()
            logger.info("Loading plan catalog", extra={"path": str(config_path)})

            with open(config_path, "r") as f:
                raw = yaml.safe_load(f) or {}

            plans, price_index = self._parse_plans(raw.get("products", {}))
            packs = self._parse_packs(raw.get("credit_packs", []))

            # Swap references so concurrent readers never see a partial catalog
            self._plans = plans
            self._price_index = price_index
            self._packs = packs
            self._default_product = raw.get("default_product", self._default_product)

            logger.info(
                "Loaded plan catalog",
                extra={"products": len(self._plans), "credit_packs": len(self._packs)},
            )

    @staticmethod
    def _parse_plans(products_data: Dict[str, Any]):
        plans: Dict[str, Dict[str, PlanLimits]] = {}
        price_index: Dict[str, PlanLimits] = {}

        for product, tiers in products_data.items():
            plans[product] = {}
            for plan_name, plan_data in (tiers or {}).items():
                price_id = None
                if plan_data.get("price_id_env"):
                    price_id = os.getenv(plan_data["price_id_env"]) or None
                limits = PlanLimits(
                    product=product,
                    plan=plan_name,
                    tokens=int(plan_data.get("tokens", 0)),
                    unlimited=bool(plan_data.get("unlimited", False)),
                    price_id=price_id or plan_data.get("price_id"),
                )
                plans[product][plan_name] = limits
                if limits.price_id:
                    price_index[limits.price_id] = limits

        return plans, price_index

    @staticmethod
    def _parse_packs(packs_data: List[Dict[str, Any]]) -> Dict[str, CreditPack]:
        packs = {}
        for pack_data in packs_data:
            pack = CreditPack(
                pack_id=pack_data["id"],
                credits=int(pack_data["credits"]),
                price=int(pack_data["price"]),
            )
            packs[pack.pack_id] = pack
        return packs

    def reload(self) -> None:
        """Reload the catalog from disk, keeping the old one on failure."""
        logger.info("Reloading plan catalog")
        try:
            self._load_config()
        except (OSError, yaml.YAMLError, KeyError, ValueError):
            logger.error("Plan catalog reload failed, keeping previous catalog", exc_info=True)
            raise

    @property
    def default_product(self) -> str:
        return self._default_product

    def get_products(self) -> List[str]:
        return list(self._plans.keys())

    def get_plan_limits(self, plan: str, product: Optional[str] = None) -> Optional[PlanLimits]:
        """
        Get limits for a plan on a product.

        Returns None for unknown products or plans.
        """
        product = product or self._default_product
        return self._plans.get(product, {}).get((plan or "").lower())

    def get_free_limit(self, product: Optional[str] = None) -> Optional[int]:
        limits = self.get_plan_limits(FREE_PLAN, product)
        return limits.tokens if limits else None

    def get_plan_for_price(self, price_id: Optional[str]) -> Optional[PlanLimits]:
        """Map a provider price id to its plan, if configured."""
        if not price_id:
            return None
        return self._price_index.get(price_id)

    def get_credit_pack(self, pack_id: str) -> Optional[CreditPack]:
        return self._packs.get(pack_id)

    def get_credit_packs(self) -> List[CreditPack]:
        return sorted(self._packs.values(), key=lambda p: p.credits)


def get_plan_catalog(config_path: Optional[str] = None) -> PlanCatalogLoader:
    """Get the singleton PlanCatalogLoader instance."""
    return PlanCatalogLoader(config_path)


def reset_plan_catalog() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    PlanCatalogLoader._instance = None
