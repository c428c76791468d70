"""Tests for embedding providers (stub implementations only)."""

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from filesense.embeddings import (
    DEFAULT_MAX_CHARS,
    StubTextEmbeddingProvider,
    StubVisualEmbeddingProvider,
    TextProvider,
    VisualProvider,
    create_text_provider,
    create_visual_provider,
)
from filesense.errors import InvalidInputError, NotInitializedError
from filesense.indexer import EMBED_MAX_CHARS
from filesense.vectors import is_unit


class TestStubTextProvider:
    @pytest.fixture
    def provider(self) -> StubTextEmbeddingProvider:
        return StubTextEmbeddingProvider(dim=64)

    def test_satisfies_protocol(self, provider):
        assert isinstance(provider, TextProvider)

    def test_unit_vectors_of_declared_dimension(self, provider):
        vec = provider.encode_text("hello world")
        assert vec.shape == (64,)
        assert vec.dtype == np.float32
        assert is_unit(vec)

    def test_deterministic(self, provider):
        np.testing.assert_array_equal(
            provider.encode_text("same"), provider.encode_text("same")
        )

    def test_truncates_long_input(self, provider):
        head = "a" * DEFAULT_MAX_CHARS
        np.testing.assert_array_equal(
            provider.encode_text(head),
            provider.encode_text(head + "tail that is ignored"),
        )

    def test_keeps_everything_the_indexer_reads(self, provider):
        assert DEFAULT_MAX_CHARS == EMBED_MAX_CHARS
        head = "a" * 2000
        assert not np.array_equal(
            provider.encode_text(head + "x"),
            provider.encode_text(head + "y"),
        )

    def test_batch_matches_single(self, provider):
        batch = provider.encode_batch(["one", "two"])
        np.testing.assert_array_equal(batch[1], provider.encode_text("two"))

    def test_unloaded_raises(self, provider):
        provider.unload()
        assert not provider.is_loaded()
        with pytest.raises(NotInitializedError):
            provider.encode_text("x")
        provider.load()
        assert provider.is_loaded()

    def test_counts_encodes(self, provider):
        provider.encode_batch(["a", "b", "c"])
        assert provider.encode_calls == 3


class TestStubVisualProvider:
    @pytest.fixture
    def provider(self) -> StubVisualEmbeddingProvider:
        return StubVisualEmbeddingProvider(dim=32)

    def test_satisfies_protocol(self, provider):
        assert isinstance(provider, VisualProvider)

    def test_encode_image_reports_size(self, provider, tmp_path: Path):
        path = tmp_path / "red.png"
        Image.new("RGB", (40, 20), (255, 0, 0)).save(path)
        result = provider.encode_image(path)
        assert (result.width, result.height) == (40, 20)
        assert result.vector.shape == (32,)
        assert is_unit(result.vector)

    def test_same_bytes_same_vector(self, provider, tmp_path: Path):
        a = tmp_path / "a.png"
        b = tmp_path / "b.png"
        Image.new("RGB", (8, 8), (0, 0, 255)).save(a)
        b.write_bytes(a.read_bytes())
        np.testing.assert_array_equal(
            provider.encode_image(a).vector, provider.encode_image(b).vector
        )

    def test_unsupported_format(self, provider, tmp_path: Path):
        path = tmp_path / "icon.svg"
        path.write_text("<svg/>")
        with pytest.raises(InvalidInputError):
            provider.encode_image(path)

    def test_text_in_same_space(self, provider):
        assert provider.encode_text("a cat").shape == (32,)


class TestFactories:
    def test_stub_factories(self):
        assert isinstance(create_text_provider(stub=True), TextProvider)
        assert isinstance(create_visual_provider(stub=True), VisualProvider)
        assert create_text_provider(stub=True).dimension() == 384
        assert create_visual_provider(stub=True).dimension() == 512

    def test_providers_exported_from_package(self):
        import filesense
        from filesense.embeddings import (
            TextEmbeddingProvider,
            VisualEmbeddingProvider,
        )

        assert filesense.TextEmbeddingProvider is TextEmbeddingProvider
        assert filesense.VisualEmbeddingProvider is VisualEmbeddingProvider
        assert "TextEmbeddingProvider" in filesense.__all__
