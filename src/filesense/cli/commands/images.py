"""Images command - find pictures by description or by example."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import tyro

from filesense import console
from filesense.cli._common import (
    DEFAULT_VISUAL_MODEL,
    load_visual_provider,
    open_image_store,
    open_store,
    resolve_db,
)
from filesense.search import QueryEngine, SearchOptions


@dataclass
class Images:
    """Search indexed images by text description or by a reference image."""

    text: tyro.conf.Positional[str | None] = field(
        default=None,
        metadata={"help": "Description of the picture"},
    )
    like: Path | None = field(
        default=None,
        metadata={"help": "Find images that look like this one"},
    )
    db: Path | None = field(
        default=None,
        metadata={"help": "Index database (default ~/.cache/filesense)"},
    )
    model: str = field(
        default=DEFAULT_VISUAL_MODEL,
        metadata={"help": "Image embedding model name"},
    )
    limit: int = field(
        default=10,
        metadata={"help": "Number of results (max 100)"},
    )
    min_score: float = field(
        default=0.0,
        metadata={"help": "Drop results scoring below this"},
    )
    stub: bool = field(
        default=False,
        metadata={"help": "Use stub embeddings (no model download)"},
    )

    def run(self) -> int:
        """Execute the images command."""
        if not self.text and self.like is None:
            console.error("provide a description or --like IMAGE")
            return 1

        options = SearchOptions(
            max_results=self.limit, min_score=self.min_score
        )
        visual = load_visual_provider(self.model, self.stub)
        with open_store(resolve_db(self.db)) as store:
            engine = QueryEngine(
                store=store,
                visual_provider=visual,
                image_store=open_image_store(store, visual.dimension()),
            )
            if self.like is not None:
                results = engine.image_query_by_image(self.like, options)
            else:
                results = engine.image_query_by_text(self.text or "", options)

        if not results.success:
            console.error(results.error)
            return 1

        console.header(f"{results.query} ({results.message})")
        if not results.results:
            console.dim("no matches")
        for r in results:
            console.score(r.score, f"{r.path}  [{r.width}x{r.height}]")
        return 0
