"""Clear command - drop every indexed record."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from filesense import console
from filesense.cli._common import open_image_store, open_store, resolve_db


@dataclass
class Clear:
    """Remove all records from the index."""

    db: Path | None = field(
        default=None,
        metadata={"help": "Index database (default ~/.cache/filesense)"},
    )
    yes: bool = field(
        default=False,
        metadata={"help": "Do not ask for confirmation"},
    )

    def run(self) -> int:
        """Execute the clear command."""
        db = resolve_db(self.db)
        if not db.exists():
            console.info(f"no index at {db}")
            return 0

        if not self.yes:
            answer = console.err.input(f"clear all records in {db}? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                console.dim("aborted")
                return 1

        with open_store(db) as store:
            count = store.count()
            store.clear()
            open_image_store(store).clear()
        console.success(f"cleared {count} record(s)")
        return 0
