"""
Rule tables turning free-text garment hints into provider parameters.

Every table is ordered: the first matching rule wins. The order is the
behaviour, so the tables are exported and tested directly.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, Optional, Pattern, Sequence, Tuple

from ..types import Complexity, FittingType, GarmentCategory, GarmentProfile, PhotoType

logger = logging.getLogger(__name__)

CATEGORY_RULES: Tuple[Tuple[GarmentCategory, Tuple[str, ...]], ...] = (
    (
        "one-pieces",
        (
            "dress", "gown", "jumpsuit", "romper", "overall", "bodysuit", "swimsuit",
            "bikini", "one-piece", "playsuit", "kaftan",
        ),
    ),
    (
        "bottoms",
        (
            "pants", "jeans", "trouser", "short", "skirt", "legging", "jogger",
            "sweatpants", "culottes", "capri", "palazzo", "cargo", "chinos", "wide leg",
            "bootcut", "flare",
        ),
    ),
    (
        "tops",
        (
            "shirt", "top", "blouse", "tshirt", "t-shirt", "tank", "jacket", "coat",
            "blazer", "cardigan", "hoodie", "sweater", "polo", "henley", "tunic",
            "camisole", "vest", "pullover", "sweatshirt", "turtleneck", "halter",
            "off-shoulder", "parka", "windbreaker", "jumper",
        ),
    ),
)

# Checked only when no keyword matched; plain substring match on URL paths.
URL_CATEGORY_RULES: Tuple[Tuple[GarmentCategory, Tuple[str, ...]], ...] = (
    ("one-pieces", ("/dress", "/one-piece", "/jumpsuit", "/romper")),
    ("bottoms", ("/pants", "/bottoms", "/jeans", "/skirt", "/shorts", "/trousers")),
    ("tops", ("/tops", "/shirts", "/jacket", "/sweater", "/outerwear")),
)

FITTING_RULES: Tuple[Tuple[FittingType, Tuple[str, ...]], ...] = (
    (
        "accessory",
        ("scarf", "belt", "bag", "handbag", "accessory", "hat", "jewelry", "watch", "sunglasses"),
    ),
    (
        "layered",
        (
            "jacket", "coat", "blazer", "cardigan", "vest", "shawl", "poncho", "cape",
            "kimono", "robe", "layer", "outerwear", "parka",
        ),
    ),
    ("loose", ("oversized", "loose", "baggy", "relaxed", "boyfriend", "slouchy", "boxy")),
    (
        "fitted",
        (
            "bodycon", "tight", "fitted", "slim", "skinny", "form-fitting", "bodysuit",
            "leotard", "swimsuit", "swim", "bikini", "underwear", "lingerie",
        ),
    ),
)
DEFAULT_FITTING: FittingType = "fitted"

COMPLEXITY_RULES: Tuple[Tuple[Complexity, Tuple[str, ...]], ...] = (
    ("complex", ("pattern", "print", "detail", "embroidery", "embroidered", "lace", "sequin")),
    ("moderate", ("button", "pocket", "collar", "stripe", "plaid")),
)
DEFAULT_COMPLEXITY: Complexity = "simple"

# (category or None, fitting type or None, skip_segmentation). A rule with a
# fitting type only applies when that type was signalled by a keyword.
SEGMENTATION_RULES: Tuple[Tuple[Optional[str], Optional[str], bool], ...] = (
    ("one-pieces", None, False),
    (None, "layered", True),
    (None, "accessory", True),
    (None, "loose", True),
    (None, "fitted", False),
    ("bottoms", None, False),
    ("tops", None, False),
)
DEFAULT_SKIP_SEGMENTATION = False

FLAT_LAY_PATTERNS: Tuple[str, ...] = (
    "amazon.com", "amzn", "zara.com", "hm.com", "gap.com", "nordstrom", "macys",
    "target.com", "shein", "fashionnova", "asos", "shopify", "woocommerce",
    "/product/", "/item/", "/products/", "ghost-mannequin", "flat-lay", "flatlay",
    "product-image", "catalog",
)
MODEL_PATTERNS: Tuple[str, ...] = (
    "instagram.com", "cdninstagram", "pinterest.com", "pinimg", "tumblr", "blogspot",
    "street-style", "streetstyle", "lookbook", "ootd", "worn", "styled", "model-",
    "influencer",
)
FLAT_LAY_SOURCES: Tuple[str, ...] = (
    "external-search", "shopping", "product", "closet", "user_upload", "wardrobe",
    "generated", "ai-outfit",
)
MODEL_SOURCES: Tuple[str, ...] = ("inspiration", "pinterest", "instagram")


def _keyword_pattern(keyword: str) -> Pattern[str]:
    # Word-bounded and plural-aware: "dress" matches "dresses" but not "address".
    # A keyword directly followed by "sleeve" is a modifier ("short sleeve shirt").
    return re.compile(rf"(?<![a-z0-9]){re.escape(keyword)}(?:e?s)?(?![a-z0-9])(?![\s-]*sleeve)")


def _compile(
    rules: Sequence[Tuple[str, Tuple[str, ...]]],
) -> Tuple[Tuple[str, Tuple[Pattern[str], ...]], ...]:
    return tuple((label, tuple(_keyword_pattern(k) for k in keywords)) for label, keywords in rules)


_CATEGORY_PATTERNS = _compile(CATEGORY_RULES)
_FITTING_PATTERNS = _compile(FITTING_RULES)
_COMPLEXITY_PATTERNS = _compile(COMPLEXITY_RULES)


def normalize_hint(hint: str | None) -> str:
    return " ".join((hint or "").lower().split())


def _first_match(
    text: str, compiled: Tuple[Tuple[str, Tuple[Pattern[str], ...]], ...]
) -> Optional[str]:
    for label, patterns in compiled:
        if any(pattern.search(text) for pattern in patterns):
            return label
    return None


def detect_category(text: str) -> GarmentCategory:
    label = _first_match(text, _CATEGORY_PATTERNS)
    if label is not None:
        return label  # type: ignore[return-value]
    for category, fragments in URL_CATEGORY_RULES:
        if any(fragment in text for fragment in fragments):
            return category
    return "auto"


def detect_fitting(text: str) -> Optional[FittingType]:
    """Return the signalled fitting type, or ``None`` when no keyword matched."""
    return _first_match(text, _FITTING_PATTERNS)  # type: ignore[return-value]


def detect_complexity(text: str) -> Complexity:
    label = _first_match(text, _COMPLEXITY_PATTERNS)
    return label or DEFAULT_COMPLEXITY  # type: ignore[return-value]


def resolve_skip_segmentation(category: str, fitting: Optional[str]) -> bool:
    for rule_category, rule_fitting, skip in SEGMENTATION_RULES:
        if rule_category is not None and rule_category != category:
            continue
        if rule_fitting is not None and rule_fitting != fitting:
            continue
        return skip
    return DEFAULT_SKIP_SEGMENTATION


def build_hint(
    description: str | None,
    garment_type: str | None,
    garment_reference: object = None,
) -> str:
    """Pick the text to classify: description, then garment type, then the garment URL."""
    for candidate in (description, garment_type):
        if candidate and candidate.strip():
            return candidate
    if isinstance(garment_reference, str) and not garment_reference.startswith("data:"):
        return garment_reference
    return ""


def detect_photo_type(
    garment_reference: str | None,
    source: str | None = None,
    provided: PhotoType | None = None,
) -> PhotoType:
    """Guess whether a garment photo is a flat-lay product shot or worn by a model."""
    if provided and provided != "auto":
        return provided

    reference = (garment_reference or "").lower()
    if not reference.startswith("data:"):
        if any(pattern in reference for pattern in FLAT_LAY_PATTERNS):
            return "flat-lay"
        if any(pattern in reference for pattern in MODEL_PATTERNS):
            return "model"

    source_lower = (source or "").lower()
    if source_lower:
        if any(token in source_lower for token in FLAT_LAY_SOURCES):
            return "flat-lay"
        if any(token in source_lower for token in MODEL_SOURCES):
            return "model"
    return "auto"


class GarmentAnalyzer:
    """Deterministic, memoised garment classifier."""

    def __init__(self) -> None:
        self._cache: Dict[str, GarmentProfile] = {}

    def classify(self, hint: str | None) -> GarmentProfile:
        key = normalize_hint(hint)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        category = detect_category(key)
        fitting = detect_fitting(key)
        profile = GarmentProfile(
            category=category,
            fitting_type=fitting or DEFAULT_FITTING,
            complexity=detect_complexity(key),
            skip_segmentation=resolve_skip_segmentation(category, fitting),
        )
        self._cache[key] = profile
        logger.debug("🏷️  Garment %r classified as %s", key[:80], profile)
        return profile

    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()
