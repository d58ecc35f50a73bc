import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class FeatureKey(str, Enum):
    DAILY_ROAS = "daily_roas"
    PROFIT_SHEET = "profit_sheet"
    CAMPAIGNS = "campaigns"
    AI_COTACAO = "ai_cotacao"
    PRODUCT_RESEARCH = "product_research"
    DEDICATED_SUPPORT = "dedicated_support"
    CUSTOM_FEATURES = "custom_features"


FeatureValue = bool | int
FeatureMap = Dict[FeatureKey, FeatureValue]


@dataclass(frozen=True)
class Plan:
    code: str
    name: str
    store_limit: Optional[int]  # None = unlimited
    campaign_limit: Optional[int]  # None = unlimited
    features: FeatureMap = field(default_factory=dict)
    allowed_pages: tuple[str, ...] = ()

    def features_json(self) -> Dict[str, Any]:
        return {key.value: value for key, value in self.features.items()}


def _flags(*keys: FeatureKey) -> FeatureMap:
    return {key: True for key in keys}


_BASE_PAGES = ("dashboard", "products", "settings", "integrations")
_ANALYTICS_PAGES = _BASE_PAGES + ("campaign-control", "profit-sheet", "meta-dashboard")

PLANS: Dict[str, Plan] = {
    "free": Plan("free", "FREE", 0, 0, {}, ("settings", "products", "integrations")),
    "basic": Plan(
        "basic", "BASIC", 1, 15,
        _flags(FeatureKey.DAILY_ROAS, FeatureKey.PROFIT_SHEET),
        _ANALYTICS_PAGES,
    ),
    "standard": Plan(
        "standard", "STANDARD", 2, 40,
        _flags(FeatureKey.DAILY_ROAS, FeatureKey.PROFIT_SHEET, FeatureKey.CAMPAIGNS, FeatureKey.AI_COTACAO),
        _ANALYTICS_PAGES,
    ),
    "expert": Plan(
        "expert", "EXPERT", 4, None,
        _flags(
            FeatureKey.DAILY_ROAS, FeatureKey.PROFIT_SHEET, FeatureKey.CAMPAIGNS,
            FeatureKey.AI_COTACAO, FeatureKey.PRODUCT_RESEARCH,
        ),
        _ANALYTICS_PAGES + ("product-research",),
    ),
    "business": Plan(
        "business", "BUSINESS", None, None,
        _flags(*FeatureKey),
        _ANALYTICS_PAGES + ("product-research",),
    ),
}

# Trial tenants get the standard tier for the length of the trial
PLANS["trial"] = Plan(
    "trial", "TRIAL",
    PLANS["standard"].store_limit,
    PLANS["standard"].campaign_limit,
    dict(PLANS["standard"].features),
    PLANS["standard"].allowed_pages,
)

FREE_PLAN = PLANS["free"]
TRIAL_PLAN = PLANS["trial"]


def get_plan(code: Optional[str]) -> Optional[Plan]:
    if not code:
        return None
    return PLANS.get(code.lower())


def parse_feature_key(raw: str) -> FeatureKey:
    """Map a feature name onto the closed key set; raises ValueError for unknown names."""
    return FeatureKey(raw.strip().lower().replace("-", "_"))


def parse_features(raw: Any) -> FeatureMap:
    """
    Normalize a stored ``features_enabled`` blob.

    Accepts the canonical ``{"name": bool | int}`` map and the legacy list of
    enabled names. Unknown names are dropped; non bool/int values are ignored.
    """
    if not raw:
        return {}
    if isinstance(raw, (list, tuple)):
        raw = {name: True for name in raw}
    if not isinstance(raw, dict):
        logger.warning("Ignoring malformed features_enabled value of type %s", type(raw).__name__)
        return {}

    features: FeatureMap = {}
    for name, value in raw.items():
        try:
            key = parse_feature_key(str(name))
        except ValueError:
            logger.warning("Ignoring unknown feature key %r", name)
            continue
        if isinstance(value, bool) or isinstance(value, int):
            features[key] = value
    return features


def feature_enabled(value: Optional[FeatureValue]) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return value > 0
