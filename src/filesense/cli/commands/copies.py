"""Copies command - find exact copies of one file."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import tyro

from filesense import console
from filesense.duplicates import DuplicateAnalyzer
from filesense.progress import format_bytes


@dataclass
class Copies:
    """Find byte-identical copies of a file under a directory."""

    file: tyro.conf.Positional[Path]
    search_dir: tyro.conf.Positional[Path] = field(
        default_factory=Path.cwd,
        metadata={"help": "Directory to search"},
    )

    def run(self) -> int:
        """Execute the copies command."""
        if not self.file.is_file():
            console.error(f"not a file: {self.file}")
            return 1

        group = DuplicateAnalyzer().find_copies(self.file, self.search_dir)
        if group is None:
            console.info("no copies found")
            return 0

        console.header(f"{group.file_count - 1} copies of {self.file}")
        for f in group.files[1:]:
            console.key_value(format_bytes(f.size), f.path)
        console.key_value("reclaimable", format_bytes(group.reclaimable_size))
        return 0
