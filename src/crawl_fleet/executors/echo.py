"""Deterministic executor that fabricates records from the target string."""

from __future__ import annotations

import hashlib
from typing import Any

from crawl_fleet.executors.base import BaseTaskExecutor, ExecutorContext


class EchoExecutor(BaseTaskExecutor):
    """Makes no network calls; useful for smoke runs and tests."""

    source = "echo"

    def __init__(self, context: ExecutorContext | None = None, *, item_count: int = 3) -> None:
        super().__init__()
        if item_count < 0:
            raise ValueError("item_count must be >= 0.")
        self.item_count = item_count

    def collect(self, target: str) -> list[dict[str, Any]]:
        items = []
        for sequence in range(self.item_count):
            digest = hashlib.sha256(f"{target}:{sequence}".encode()).hexdigest()
            items.append(
                {
                    "target": target,
                    "sequence": sequence,
                    "fingerprint": digest[:16],
                },
            )
        return items
