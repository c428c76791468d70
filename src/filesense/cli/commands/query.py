"""Query command - semantic search across indexed files."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Annotated, Literal

import tyro

from filesense import console
from filesense.cli._common import (
    DEFAULT_TEXT_MODEL,
    load_text_provider,
    open_store,
    resolve_db,
)
from filesense.file_types import FileKind
from filesense.search import QueryEngine, SearchOptions


@dataclass
class Query:
    """Semantic search across indexed files."""

    text: tyro.conf.Positional[str | None] = field(
        default=None,
        metadata={"help": "Search query text"},
    )
    similar_to: Path | None = field(
        default=None,
        metadata={"help": "Find files similar to this indexed file"},
    )
    db: Path | None = field(
        default=None,
        metadata={"help": "Index database (default ~/.cache/filesense)"},
    )
    model: str = field(
        default=DEFAULT_TEXT_MODEL,
        metadata={"help": "Text embedding model name"},
    )
    limit: int = field(
        default=10,
        metadata={"help": "Number of results (max 100)"},
    )
    min_score: float = field(
        default=0.0,
        metadata={"help": "Drop results scoring below this"},
    )
    directory: Path | None = field(
        default=None,
        metadata={"help": "Only return files under this directory"},
    )
    kind: Literal[
        "all", "text", "code", "document", "image", "audio", "video", "archive"
    ] = field(
        default="all",
        metadata={"help": "Filter results by file kind"},
    )
    json_output: Annotated[bool, tyro.conf.arg(name="json")] = field(
        default=False,
        metadata={"help": "Print results as JSON"},
    )
    stub: bool = field(
        default=False,
        metadata={"help": "Use stub embeddings (no model download)"},
    )

    def run(self) -> int:
        """Execute the query command."""
        if not self.text and self.similar_to is None:
            console.error("provide a query or --similar-to")
            return 1

        options = SearchOptions(
            max_results=self.limit,
            min_score=self.min_score,
            directory=str(self.directory.resolve()) if self.directory else None,
            kind=None if self.kind == "all" else FileKind.from_label(self.kind),
        )
        provider = load_text_provider(self.model, self.stub)
        with open_store(resolve_db(self.db), provider.dimension()) as store:
            engine = QueryEngine(store=store, provider=provider)
            if self.similar_to is not None:
                results = engine.similar_to_file(self.similar_to, options)
            else:
                results = engine.text_query(self.text or "", options)

        if not results.success:
            console.error(results.error)
            return 1

        if self.json_output:
            payload = [
                {**asdict(r), "kind": r.kind.label} for r in results.results
            ]
            console.out.print_json(json.dumps(payload))
            return 0

        console.header(f"{results.query} ({results.message})")
        if not results.results:
            console.dim("no matches")
        for r in results:
            console.score(r.score, r.path)
        return 0
