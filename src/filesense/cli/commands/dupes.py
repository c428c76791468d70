"""Dupes command - find duplicate and near-duplicate files."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Literal

import tyro
from rich.markup import escape

from filesense import console
from filesense.cli._common import DEFAULT_TEXT_MODEL, load_text_provider
from filesense.duplicates import (
    DuplicateAnalyzer,
    DuplicateConfig,
    KeepPolicy,
)
from filesense.progress import ScanProgress, format_bytes

_PHASES = {
    "exact": "Hashing files",
    "images": "Hashing images",
    "text": "Embedding text",
}


@dataclass
class Dupes:
    """Find duplicate files, similar images and similar text."""

    roots: tyro.conf.Positional[list[Path]] = field(
        default_factory=lambda: [Path.cwd()],
        metadata={"help": "Directories to scan"},
    )
    threshold: float = field(
        default=0.90,
        metadata={"help": "Similarity threshold for near-duplicates"},
    )
    keep: Literal[
        "newest", "oldest", "largest", "shortest_path", "most_accessed"
    ] = field(
        default="newest",
        metadata={"help": "Which file of each group to suggest keeping"},
    )
    exclude: list[str] = field(
        default_factory=list,
        metadata={"help": "Skip paths containing any of these substrings"},
    )
    no_text: bool = field(
        default=False,
        metadata={"help": "Skip the similar text pass"},
    )
    no_images: bool = field(
        default=False,
        metadata={"help": "Skip the similar image pass"},
    )
    model: str = field(
        default=DEFAULT_TEXT_MODEL,
        metadata={"help": "Text embedding model name"},
    )
    stub: bool = field(
        default=False,
        metadata={"help": "Use stub embeddings (no model download)"},
    )
    json_output: Annotated[bool, tyro.conf.arg(name="json")] = field(
        default=False,
        metadata={"help": "Print the analysis as JSON"},
    )
    cleanup: bool = field(
        default=False,
        metadata={"help": "Move every non-kept file to the trash"},
    )

    def run(self) -> int:
        """Execute the dupes command."""
        config = DuplicateConfig(
            detect_similar_images=not self.no_images,
            detect_similar_text=not self.no_text,
            similarity_threshold=self.threshold,
            exclude_patterns=list(self.exclude),
            keep_policy=KeepPolicy(self.keep),
        )
        provider = (
            None if self.no_text else load_text_provider(self.model, self.stub)
        )
        analyzer = DuplicateAnalyzer(provider=provider)

        progress = ScanProgress(use_rich=False if self.json_output else None)
        started: set[str] = set()

        def on_progress(phase: str, done: int, total: int) -> None:
            if phase not in started:
                started.add(phase)
                progress.start_phase(phase, _PHASES.get(phase, phase), total)
            progress.update(phase, done, total)

        with progress.live_context():
            try:
                analysis = analyzer.scan(self.roots, config, on_progress)
            except KeyboardInterrupt:
                config.cancel()
                raise

        if self.json_output:
            console.out.print_json(analysis.to_json())
            return 0 if analysis.success else 1

        if not analysis.success:
            console.error(analysis.message)
            return 1

        for group in analysis.groups:
            console.subheader(
                f"{group.type.value}: {group.file_count} files, "
                f"{format_bytes(group.reclaimable_size)} reclaimable"
            )
            for f in group.files:
                marker = "keep" if f.is_suggested_keep else "    "
                console.out.print(
                    f"  [dim]{marker}[/] {f.similarity:.3f}  {escape(f.path)}"
                )

        console.header("Summary")
        console.key_value("files scanned", analysis.total_files_scanned)
        console.key_value("duplicates", analysis.total_duplicates_found)
        console.key_value(
            "reclaimable", format_bytes(analysis.total_reclaimable_size)
        )
        console.key_value("unreadable", analysis.files_unreadable)
        console.key_value("scan time", f"{analysis.scan_time_ms:.0f}ms")

        if self.cleanup:
            removed = sum(
                analyzer.cleanup_group(group) for group in analysis.groups
            )
            console.success(f"moved {removed} file(s) to the trash")
        return 0
