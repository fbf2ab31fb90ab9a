"""Metrics exporter for observability."""
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import orjson

from auction_harvest.config import config


class MetricsExporter:
    """Exports progress snapshots to a JSONL file."""

    def __init__(self, run_id: str, metrics_file: Optional[Path] = None):
        self.run_id = run_id
        self.metrics_file = Path(metrics_file or config.DATA_DIR / "metrics.jsonl")
        self.start_time = time.time()

    async def export_metrics(self, phase: str, summary: Dict[str, Any], **extra: Any) -> None:
        """Append one snapshot line."""
        metrics = {
            "ts": time.time(),
            "run_id": self.run_id,
            "phase": phase,
            "processed": summary.get("processed", 0),
            "ok": summary.get("ok", 0),
            "skipped": summary.get("skipped", 0),
            "failed": summary.get("failed", 0),
            "rps": round(summary.get("rate", 0.0), 2),
            "eta": round(summary.get("eta_seconds", 0.0), 2),
            **extra,
        }
        self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(self.metrics_file, "ab") as f:
            await f.write(orjson.dumps(metrics) + b"\n")
