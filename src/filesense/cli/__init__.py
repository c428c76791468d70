"""filesense CLI - index, search and deduplicate local files.

Uses tyro for type-driven CLI generation from dataclasses.
"""

from __future__ import annotations

import os
from typing import Annotated

import tyro

from filesense.cli.commands.clear import Clear
from filesense.cli.commands.copies import Copies
from filesense.cli.commands.dupes import Dupes
from filesense.cli.commands.images import Images
from filesense.cli.commands.index import Index
from filesense.cli.commands.query import Query
from filesense.cli.commands.stats import Stats

_Index = Annotated[Index, tyro.conf.subcommand("index")]
_Query = Annotated[Query, tyro.conf.subcommand("query")]
_Search = Annotated[Query, tyro.conf.subcommand("search")]  # alias
_Images = Annotated[Images, tyro.conf.subcommand("images")]
_Dupes = Annotated[Dupes, tyro.conf.subcommand("dupes")]
_Copies = Annotated[Copies, tyro.conf.subcommand("copies")]
_Stats = Annotated[Stats, tyro.conf.subcommand("stats")]
_Clear = Annotated[Clear, tyro.conf.subcommand("clear")]

Command = (
    _Index | _Query | _Search | _Images | _Dupes | _Copies | _Stats | _Clear
)


def main() -> int:
    """Entry point for the CLI."""
    from filesense.logging_config import configure_logging

    configure_logging(debug=bool(os.environ.get("FILESENSE_DEBUG")))

    try:
        cmd = tyro.cli(
            Command,
            prog="filesense",
            description="Semantic search and duplicate detection for local "
            "files.",
        )
        return cmd.run()
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        from filesense import console

        console.error(str(e))
        return 1
