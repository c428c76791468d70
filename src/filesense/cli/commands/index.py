"""Index command - crawl directories into the index."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import tyro

from filesense import console
from filesense.cli._common import (
    DEFAULT_TEXT_MODEL,
    DEFAULT_VISUAL_MODEL,
    load_text_provider,
    load_visual_provider,
    open_image_store,
    open_store,
    resolve_db,
)
from filesense.indexer import Indexer, IndexerConfig, IndexerStatus
from filesense.progress import ScanProgress


@dataclass
class Index:
    """Index directories for semantic search."""

    roots: tyro.conf.Positional[list[Path]] = field(
        default_factory=lambda: [Path.cwd()],
        metadata={"help": "Directories to index"},
    )
    db: Path | None = field(
        default=None,
        metadata={"help": "Index database (default ~/.cache/filesense)"},
    )
    model: str = field(
        default=DEFAULT_TEXT_MODEL,
        metadata={"help": "Text embedding model name"},
    )
    images: bool = field(
        default=False,
        metadata={"help": "Also embed images with the CLIP model"},
    )
    image_model: str = field(
        default=DEFAULT_VISUAL_MODEL,
        metadata={"help": "Image embedding model name"},
    )
    watch: bool = field(
        default=False,
        metadata={"help": "Keep watching for changes until interrupted"},
    )
    hidden: bool = field(
        default=False,
        metadata={"help": "Index hidden files and directories"},
    )
    exclude: list[str] = field(
        default_factory=list,
        metadata={"help": "Extra exclude patterns"},
    )
    stub: bool = field(
        default=False,
        metadata={"help": "Use stub embeddings (no model download)"},
    )

    def run(self) -> int:
        """Execute the index command."""
        roots = [r.expanduser().resolve() for r in self.roots]
        missing = [r for r in roots if not r.is_dir()]
        if missing:
            console.error(f"not a directory: {missing[0]}")
            return 1

        provider = load_text_provider(self.model, self.stub)
        visual = (
            load_visual_provider(self.image_model, self.stub)
            if self.images
            else None
        )

        with open_store(resolve_db(self.db), provider.dimension()) as store:
            image_store = (
                open_image_store(store, visual.dimension())
                if visual is not None
                else None
            )
            indexer = Indexer(
                IndexerConfig(
                    watch_dirs=[str(r) for r in roots],
                    index_hidden_files=self.hidden,
                    enable_watching=self.watch,
                ),
                store=store,
                provider=provider,
                visual_provider=visual,
                image_store=image_store,
            )
            for pattern in self.exclude:
                indexer.add_exclude_pattern(pattern)
            return self._run_indexer(indexer)

    def _run_indexer(self, indexer: Indexer) -> int:
        progress = ScanProgress()
        with progress.live_context():
            progress.start_phase("index", "Indexing")
            indexer.progress_callback = lambda s: progress.update_from_stats(
                "index", s
            )
            indexer.status_callback = lambda path, status: (
                progress.set_stats(status=status.label) if not path else None
            )
            indexer.start()
            try:
                while not indexer.wait(0.25):
                    pass
            except KeyboardInterrupt:
                progress.log("stopping...")
                indexer.stop()
                indexer.wait()
            progress.complete_phase("index", "indexing complete")

        stats = indexer.stats()
        progress.print_summary(
            "Index Complete",
            indexed=stats.files_indexed,
            skipped=stats.files_skipped,
            failed=stats.files_failed,
            bytes=stats.total_bytes,
            seconds=stats.elapsed_time_sec,
        )
        if indexer.status is IndexerStatus.ERROR:
            console.error(indexer.error_message)
            return 1
        return 0
