"""Shared helpers for CLI commands."""

from __future__ import annotations

from pathlib import Path

from filesense import console
from filesense.embeddings import (
    DEFAULT_TEXT_MODEL,
    DEFAULT_VISUAL_MODEL,
    TextProvider,
    VisualProvider,
    create_text_provider,
    create_visual_provider,
)
from filesense.paths import default_database_path
from filesense.store import ImageStore, VectorStore

__all__ = [
    "DEFAULT_TEXT_MODEL",
    "DEFAULT_VISUAL_MODEL",
    "load_text_provider",
    "load_visual_provider",
    "open_image_store",
    "open_store",
    "resolve_db",
]


def resolve_db(db: Path | None) -> Path:
    if db is not None:
        return db.expanduser().resolve()
    return default_database_path()


def load_text_provider(model: str, stub: bool) -> TextProvider:
    if stub:
        return create_text_provider(stub=True)
    with console.status(f"loading text model ({model})..."):
        provider = create_text_provider(model=model)
        provider.dimension()
    return provider


def load_visual_provider(model: str, stub: bool) -> VisualProvider:
    if stub:
        return create_visual_provider(stub=True)
    with console.status(f"loading image model ({model})..."):
        provider = create_visual_provider(model=model)
        provider.dimension()
    return provider


def open_store(db: Path, dimension: int | None = None) -> VectorStore:
    return VectorStore.open(db, dimension=dimension)


def open_image_store(
    store: VectorStore, dimension: int | None = None
) -> ImageStore:
    return ImageStore.open(store, dimension=dimension)
