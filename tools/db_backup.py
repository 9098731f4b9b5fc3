#!/usr/bin/env -S uv run
"""Back up the database to object storage (one run)."""

from __future__ import annotations

import sys

import pgcloudbackup._main


def main(argv=None):
    return pgcloudbackup._main.main(argv)


if __name__ == "__main__":
    sys.exit(main())
