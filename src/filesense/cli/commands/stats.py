"""Stats command - show index statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from filesense import console
from filesense.cli._common import open_image_store, open_store, resolve_db
from filesense.progress import format_bytes
from filesense.search import QueryEngine


@dataclass
class Stats:
    """Show index statistics."""

    db: Path | None = field(
        default=None,
        metadata={"help": "Index database (default ~/.cache/filesense)"},
    )

    def run(self) -> int:
        """Execute the stats command."""
        db = resolve_db(self.db)
        if not db.exists():
            console.error(f"no index found at {db}")
            console.dim("run 'filesense index <directory>' first")
            return 1

        with open_store(db) as store:
            engine = QueryEngine(
                store=store,
                image_store=open_image_store(store),
            )
            stats = engine.stats()
            schema = store.schema_version()
            dimension = store.dimension

        console.header("Index Statistics")
        console.key_value("database", db)
        console.key_value("schema version", schema)
        console.key_value("dimension", dimension)
        console.key_value("files", stats.total_files)
        console.key_value("with embeddings", stats.files_with_embeddings)
        console.key_value("images", stats.images_indexed)
        console.key_value("total size", format_bytes(stats.total_size_bytes))
        return 0
