# -*- coding: utf-8 -*-
"""CLI module entry point for `python -m mediacapture.gui`."""

from __future__ import annotations

from mediacapture.main import main


if __name__ == "__main__":
    raise SystemExit(main())
