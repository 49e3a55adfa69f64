"""Entry point for `python -m clusterscope`.

Usage:
    python -m clusterscope
"""

from __future__ import annotations

import asyncio

from clusterscope.app import main

asyncio.run(main())
