"""Tests for the image preparation pipeline."""

import base64
import io

import pytest
from PIL import Image, ImageEnhance

from tryon_engine.config import PreprocessConfig
from tryon_engine.errors import ImageDecodeError
from tryon_engine.pipeline.preprocess import ImagePreprocessor, background_cleanliness
from tryon_engine.types import BackgroundOutcome, ImageKind

from .conftest import FakeRemover, make_cutout_bytes, make_image_bytes, make_noise_bytes


def decode(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


@pytest.fixture
def preprocessor():
    return ImagePreprocessor(PreprocessConfig())


class TestStages:
    """Stage markers and their order."""

    @pytest.mark.asyncio
    async def test_small_avatar_passes_every_stage(self, preprocessor, png_bytes):
        result = await preprocessor.process(png_bytes, ImageKind.AVATAR)

        mods = result.modifications_applied
        assert mods[0] == "metadata_stripped"
        assert mods[1] == "contrast_enhanced"
        assert mods[2].startswith("compressed_to_")
        assert mods[3:] == ["format_token_jpg", "validated"]
        assert result.format_token == "jpg"
        assert result.original_size == (48, 64)
        assert result.final_size == (48, 64)
        assert result.within_budget
        assert not result.degraded
        assert decode(result.data).format == "JPEG"

    @pytest.mark.asyncio
    async def test_data_url_input(self, preprocessor, png_bytes):
        data_url = "data:image/png;base64," + base64.b64encode(png_bytes).decode()

        result = await preprocessor.process(data_url, ImageKind.GARMENT)

        assert result.final_size == (48, 64)
        assert result.as_data_url().startswith("data:image/jpg;base64,")

    @pytest.mark.asyncio
    async def test_exif_orientation_is_applied(self, preprocessor):
        exif = Image.Exif()
        exif[0x0112] = 6
        rotated = make_image_bytes((40, 20), fmt="JPEG", exif=exif.tobytes())

        result = await preprocessor.process(rotated, ImageKind.AVATAR)

        assert result.modifications_applied[0] == "orientation_corrected"
        assert result.final_size == (20, 40)

    @pytest.mark.asyncio
    async def test_square_avatar_is_cropped_to_target_aspect(self, preprocessor):
        big = make_image_bytes((2000, 2000))

        result = await preprocessor.process(big, ImageKind.AVATAR)

        assert "resized_to_1024x1365" in result.modifications_applied
        assert result.final_size == (1024, 1365)
        assert decode(result.data).size == (1024, 1365)

    @pytest.mark.asyncio
    async def test_tall_avatar_is_cropped_to_target_aspect(self, preprocessor):
        tall = make_image_bytes((1000, 2730))

        result = await preprocessor.process(tall, ImageKind.AVATAR)

        assert result.final_size == (1024, 1365)

    @pytest.mark.asyncio
    async def test_avatar_crop_keeps_the_centre(self, preprocessor):
        # Wide avatar: red centre band, blue margins that the crop removes.
        image = Image.new("RGB", (4000, 1365), (0, 0, 255))
        image.paste(Image.new("RGB", (1200, 1365), (255, 0, 0)), (1400, 0))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")

        result = await preprocessor.process(buffer.getvalue(), ImageKind.AVATAR)

        output = decode(result.data).convert("RGB")
        assert output.size == (1024, 1365)
        for x in (5, 512, 1018):
            red, green, blue = output.getpixel((x, 680))
            assert red > 200 and blue < 60

    @pytest.mark.asyncio
    async def test_avatar_contrast_is_enhanced(self, preprocessor):
        image = Image.new("RGB", (64, 64), (100, 100, 100))
        image.paste(Image.new("RGB", (32, 64), (150, 150, 150)), (32, 0))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")

        result = await preprocessor.process(buffer.getvalue(), ImageKind.AVATAR)

        output = decode(result.data).convert("L")
        assert "contrast_enhanced" in result.modifications_applied
        assert output.getpixel((8, 32)) < 99
        assert output.getpixel((56, 32)) > 151

    @pytest.mark.asyncio
    async def test_garment_contrast_is_untouched(self, preprocessor, png_bytes):
        result = await preprocessor.process(png_bytes, ImageKind.GARMENT)

        assert "contrast_enhanced" not in result.modifications_applied

    @pytest.mark.asyncio
    async def test_contrast_factor_of_one_skips_the_stage(self, png_bytes):
        preprocessor = ImagePreprocessor(PreprocessConfig(avatar_contrast=1.0))

        result = await preprocessor.process(png_bytes, ImageKind.AVATAR)

        assert not any(m.startswith("contrast_") for m in result.modifications_applied)

    @pytest.mark.asyncio
    async def test_contrast_failure_keeps_the_image(self, preprocessor, png_bytes, monkeypatch):
        def broken(image):
            raise RuntimeError("enhancer unavailable")

        monkeypatch.setattr(ImageEnhance, "Contrast", broken)

        result = await preprocessor.process(png_bytes, ImageKind.AVATAR)

        assert "contrast_failed" in result.modifications_applied
        assert "validated" in result.modifications_applied
        assert result.final_size == (48, 64)

    @pytest.mark.asyncio
    async def test_small_avatar_is_never_upscaled(self, preprocessor):
        result = await preprocessor.process(make_image_bytes((300, 400)), ImageKind.AVATAR)

        assert result.final_size == (300, 400)
        assert not any(m.startswith("resized_to_") for m in result.modifications_applied)

    @pytest.mark.asyncio
    async def test_garment_longest_edge_is_clamped(self, preprocessor):
        wide = make_image_bytes((3000, 1500))

        result = await preprocessor.process(wide, ImageKind.GARMENT)

        assert "resized_to_2048x1024" in result.modifications_applied
        assert result.final_size == (2048, 1024)

    @pytest.mark.asyncio
    async def test_alpha_image_stays_png(self, preprocessor):
        cutout = make_cutout_bytes()

        result = await preprocessor.process(cutout, ImageKind.GARMENT)

        assert result.format_token == "png"
        assert "format_token_png" in result.modifications_applied
        assert decode(result.data).mode == "RGBA"

    @pytest.mark.asyncio
    async def test_jpeg_token_comes_from_configuration(self, png_bytes):
        preprocessor = ImagePreprocessor(PreprocessConfig(), jpeg_format_token="jpeg")

        result = await preprocessor.process(png_bytes, ImageKind.AVATAR)

        assert result.format_token == "jpeg"
        assert result.as_data_url().startswith("data:image/jpeg;base64,")


class TestByteBudget:
    """Every result is within budget or carries a degradation marker."""

    @pytest.mark.asyncio
    async def test_over_budget_is_marked(self):
        preprocessor = ImagePreprocessor(PreprocessConfig(max_avatar_bytes=1024))

        result = await preprocessor.process(make_noise_bytes((256, 256)), ImageKind.AVATAR)

        assert result.size_bytes > 1024
        assert "over_byte_budget" in result.modifications_applied
        assert result.degraded
        assert not result.within_budget

    @pytest.mark.asyncio
    async def test_smallest_candidate_is_kept(self):
        config = PreprocessConfig(max_avatar_bytes=1024, quality_ladder=[95, 60])
        preprocessor = ImagePreprocessor(config)
        noise = make_noise_bytes((256, 256))

        result = await preprocessor.process(noise, ImageKind.AVATAR)

        high = io.BytesIO()
        decode(noise).convert("RGB").save(high, format="JPEG", quality=95, optimize=True)
        assert result.size_bytes < len(high.getvalue())

    @pytest.mark.asyncio
    async def test_budget_invariant_across_sizes(self, preprocessor):
        for size in ((64, 64), (512, 256), (1100, 1500)):
            for kind in ImageKind:
                result = await preprocessor.process(make_noise_bytes(size), kind)
                assert result.within_budget or result.degraded

    def test_ladder_is_sorted_descending(self):
        config = PreprocessConfig(quality_ladder=[60, 95, 80, 95])

        assert config.quality_ladder == [95, 80, 60]


class TestInputs:
    """Input forms and decode failures."""

    @pytest.mark.asyncio
    async def test_remote_url_passes_through(self, preprocessor):
        url = "https://cdn.example.com/garments/shirt.png"

        result = await preprocessor.process(url, ImageKind.GARMENT)

        assert result.modifications_applied == ["remote_url_unverified"]
        assert result.degraded
        assert result.as_data_url() == url
        assert result.format_token == "png"

    @pytest.mark.asyncio
    async def test_empty_bytes_raise(self, preprocessor):
        with pytest.raises(ImageDecodeError):
            await preprocessor.process(b"", ImageKind.AVATAR)

    @pytest.mark.asyncio
    async def test_garbage_bytes_raise(self, preprocessor):
        with pytest.raises(ImageDecodeError):
            await preprocessor.process(b"definitely not an image", ImageKind.GARMENT)

    @pytest.mark.asyncio
    async def test_bad_base64_raises(self, preprocessor):
        with pytest.raises(ImageDecodeError):
            await preprocessor.process("data:image/png;base64,@@@not-base64@@@", ImageKind.AVATAR)

    @pytest.mark.asyncio
    async def test_unsupported_string_raises(self, preprocessor):
        with pytest.raises(ImageDecodeError):
            await preprocessor.process("/tmp/avatar.png", ImageKind.AVATAR)


class TestBackgroundIsolation:
    """Three explicit outcomes for background removal."""

    @pytest.mark.asyncio
    async def test_clean_cutout_is_applied(self, png_bytes):
        remover = FakeRemover(make_cutout_bytes())
        preprocessor = ImagePreprocessor(PreprocessConfig(), background_remover=remover)

        result = await preprocessor.process(png_bytes, ImageKind.GARMENT)

        assert result.background is BackgroundOutcome.APPLIED
        assert "background_removed" in result.modifications_applied
        assert result.format_token == "png"
        assert result.final_size == (64, 64)

    @pytest.mark.asyncio
    async def test_opaque_cutout_is_rejected(self, png_bytes):
        remover = FakeRemover(make_image_bytes((48, 64), mode="RGBA", color=(1, 2, 3, 255)))
        preprocessor = ImagePreprocessor(PreprocessConfig(), background_remover=remover)

        result = await preprocessor.process(png_bytes, ImageKind.GARMENT)

        assert result.background is BackgroundOutcome.SKIPPED_LOW_QUALITY
        assert "background_removal_rejected" in result.modifications_applied
        assert result.format_token == "jpg"

    @pytest.mark.asyncio
    async def test_remover_error_falls_back(self, png_bytes):
        remover = FakeRemover(RuntimeError("service down"))
        preprocessor = ImagePreprocessor(PreprocessConfig(), background_remover=remover)

        result = await preprocessor.process(png_bytes, ImageKind.GARMENT)

        assert result.background is BackgroundOutcome.SKIPPED_ERROR
        assert "background_removal_failed" in result.modifications_applied
        assert "validated" in result.modifications_applied

    @pytest.mark.asyncio
    async def test_avatars_are_not_sent_for_removal(self, png_bytes):
        remover = FakeRemover(make_cutout_bytes())
        preprocessor = ImagePreprocessor(PreprocessConfig(), background_remover=remover)

        result = await preprocessor.process(png_bytes, ImageKind.AVATAR)

        assert remover.calls == 0
        assert result.background is None

    def test_cleanliness_scores(self):
        clean = decode(make_cutout_bytes())
        opaque = decode(make_image_bytes((32, 32), mode="RGBA", color=(0, 0, 0, 255)))
        rgb = decode(make_image_bytes((32, 32)))

        assert background_cleanliness(clean) == 100.0
        assert background_cleanliness(opaque) == 0.0
        assert background_cleanliness(rgb) == 0.0
