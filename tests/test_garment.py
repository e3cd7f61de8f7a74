"""Tests for the table-driven garment classifier."""

import pytest

from tryon_engine.pipeline.garment import (
    CATEGORY_RULES,
    COMPLEXITY_RULES,
    FITTING_RULES,
    SEGMENTATION_RULES,
    GarmentAnalyzer,
    build_hint,
    detect_photo_type,
    resolve_skip_segmentation,
)
from tryon_engine.types import GarmentProfile


@pytest.fixture
def analyzer():
    return GarmentAnalyzer()


class TestRuleTables:
    """The rule tables are ordered and their order is the behaviour."""

    def test_category_priority(self):
        assert [label for label, _ in CATEGORY_RULES] == ["one-pieces", "bottoms", "tops"]

    def test_fitting_priority(self):
        assert [label for label, _ in FITTING_RULES] == ["accessory", "layered", "loose", "fitted"]

    def test_complexity_priority(self):
        assert [label for label, _ in COMPLEXITY_RULES] == ["complex", "moderate"]

    def test_segmentation_priority(self):
        assert SEGMENTATION_RULES[0] == ("one-pieces", None, False)
        assert [rule[1] for rule in SEGMENTATION_RULES[1:5]] == [
            "layered",
            "accessory",
            "loose",
            "fitted",
        ]

    def test_one_piece_beats_layered(self):
        assert resolve_skip_segmentation("one-pieces", "layered") is False

    def test_unresolved_does_not_skip(self):
        assert resolve_skip_segmentation("auto", None) is False


class TestClassification:
    """Tests for classify()."""

    def test_bodycon_dress(self, analyzer):
        assert analyzer.classify("red bodycon dress") == GarmentProfile(
            category="one-pieces",
            fitting_type="fitted",
            complexity="simple",
            skip_segmentation=False,
        )

    def test_oversized_denim_jacket(self, analyzer):
        profile = analyzer.classify("oversized denim jacket")

        assert profile.category == "tops"
        assert profile.fitting_type == "layered"
        assert profile.skip_segmentation is True

    @pytest.mark.parametrize(
        "hint, category",
        [
            ("Black Satin Jumpsuit", "one-pieces"),
            ("high waisted jeans", "bottoms"),
            ("pleated midi skirts", "bottoms"),
            ("denim shorts", "bottoms"),
            ("short sleeve shirt", "tops"),
            ("short-sleeve polo", "tops"),
            ("Short Sleeved Linen Tunic", "tops"),
            ("khaki shorts with short sleeve top", "bottoms"),
            ("cotton blouse", "tops"),
            ("cropped hoodie", "tops"),
            ("leather belt", "auto"),
            ("", "auto"),
        ],
    )
    def test_categories(self, analyzer, hint, category):
        assert analyzer.classify(hint).category == category

    def test_plural_keywords_match(self, analyzer):
        assert analyzer.classify("two summer dresses").category == "one-pieces"

    def test_keywords_need_word_boundaries(self, analyzer):
        # "address" contains "dress", "laptop" contains "top".
        assert analyzer.classify("shipping address label").category == "auto"
        assert analyzer.classify("laptop sleeve").category == "auto"

    def test_url_path_fallback(self, analyzer):
        profile = analyzer.classify("https://cdn.example.com/bottoms/item-42.jpg")

        assert profile.category == "bottoms"

    def test_keyword_in_url_wins(self, analyzer):
        assert analyzer.classify("https://shop.example.com/dresses/summer-123").category == "one-pieces"

    def test_loose_garment_skips_segmentation(self, analyzer):
        profile = analyzer.classify("relaxed linen trousers")

        assert profile.category == "bottoms"
        assert profile.fitting_type == "loose"
        assert profile.skip_segmentation is True

    def test_accessory(self, analyzer):
        profile = analyzer.classify("silk scarf")

        assert profile.fitting_type == "accessory"
        assert profile.skip_segmentation is True

    def test_default_fitting_without_signal(self, analyzer):
        profile = analyzer.classify("cotton t-shirt")

        assert profile.category == "tops"
        assert profile.fitting_type == "fitted"
        assert profile.skip_segmentation is False

    @pytest.mark.parametrize(
        "hint, complexity",
        [
            ("floral print blouse", "complex"),
            ("lace slip dress", "complex"),
            ("striped button-down shirt", "moderate"),
            ("plaid flannel shirt", "moderate"),
            ("shirt with chest pocket", "moderate"),
            ("plain white tee", "simple"),
        ],
    )
    def test_complexity(self, analyzer, hint, complexity):
        assert analyzer.classify(hint).complexity == complexity

    def test_whitespace_and_case_are_normalised(self, analyzer):
        first = analyzer.classify("  Red   BODYCON dress ")
        second = analyzer.classify("red bodycon dress")

        assert first == second
        assert analyzer.cache_size() == 1

    def test_results_are_memoised(self, analyzer):
        first = analyzer.classify("oversized denim jacket")
        second = analyzer.classify("oversized denim jacket")

        assert first is second
        analyzer.clear_cache()
        assert analyzer.cache_size() == 0


class TestHintPrecedence:
    """Description, then garment type, then the garment URL."""

    def test_description_first(self):
        assert build_hint("floral maxi dress", "jacket", "https://x/tops/1.jpg") == "floral maxi dress"

    def test_type_when_no_description(self):
        assert build_hint("  ", "jacket", "https://x/tops/1.jpg") == "jacket"

    def test_url_last(self):
        assert build_hint(None, None, "https://x/tops/1.jpg") == "https://x/tops/1.jpg"

    def test_data_urls_and_bytes_are_not_hints(self):
        assert build_hint(None, None, "data:image/png;base64,AAAA") == ""
        assert build_hint(None, None, b"\x89PNG") == ""


class TestPhotoType:
    """Tests for flat-lay / model detection."""

    def test_retailer_url_is_flat_lay(self):
        assert detect_photo_type("https://www.amazon.com/dp/B0123") == "flat-lay"

    def test_product_path_is_flat_lay(self):
        assert detect_photo_type("https://shop.example.com/product/123.jpg") == "flat-lay"

    def test_social_url_is_model(self):
        assert detect_photo_type("https://i.pinimg.com/originals/ab/cd.jpg") == "model"

    def test_source_fallback(self):
        assert detect_photo_type(None, "closet") == "flat-lay"
        assert detect_photo_type("data:image/png;base64,AAAA", "inspiration") == "model"

    def test_explicit_value_wins(self):
        assert detect_photo_type("https://www.amazon.com/dp/B0123", provided="model") == "model"

    def test_unknown_is_auto(self):
        assert detect_photo_type("https://example.org/image.jpg") == "auto"
        assert detect_photo_type(None) == "auto"
