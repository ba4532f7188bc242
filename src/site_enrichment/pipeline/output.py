"""JSON output formatter for enrichment runs.

Example output structure:
{
    "summary": {
        "total_items": 25,
        "succeeded": 24,
        "failed": 1,
        "from_cache": 10,
        "recovered": 2,
        "success_rate": 0.96,
        "processing_time_seconds": 1.23
    },
    "metrics": {...},
    "results": [
        {"lat": 40.7128, "lng": -74.006, "priority": 0.9, "result": {...},
         "error": null, "from_cache": false, "recovered": false}
    ],
    "health": {"overall_health": "healthy", ...}
}
"""

import dataclasses
import json
from pathlib import Path
from typing import Any, Dict, List

from site_enrichment.models.data_models import BatchResult, EnrichmentRunResult


class JSONOutputFormatter:
    """Formats enrichment run results as JSON."""

    def format(self, run: EnrichmentRunResult) -> Dict[str, Any]:
        return {
            "summary": self._format_summary(run),
            "metrics": dataclasses.asdict(run.metrics),
            "results": self._format_results(run.results),
            "health": run.health_report,
        }

    def _format_summary(self, run: EnrichmentRunResult) -> Dict[str, Any]:
        total = len(run.results)
        failed = sum(1 for entry in run.results if entry.error is not None)
        return {
            "total_items": total,
            "succeeded": total - failed,
            "failed": failed,
            "from_cache": sum(1 for entry in run.results if entry.from_cache),
            "recovered": sum(1 for entry in run.results if entry.recovered),
            "success_rate": round((total - failed) / total, 4) if total > 0 else 0.0,
            "processing_time_seconds": round(run.elapsed_seconds, 2),
        }

    def _format_results(self, results: List[BatchResult]) -> List[Dict[str, Any]]:
        return [
            {
                "lat": entry.item.lat,
                "lng": entry.item.lng,
                "priority": entry.item.priority,
                "result": entry.result,
                "error": entry.error,
                "from_cache": entry.from_cache,
                "recovered": entry.recovered,
            }
            for entry in results
        ]

    def save(self, run: EnrichmentRunResult, path: str = "out/enrichment.json") -> None:
        """
        Save formatted result to JSON file.

        Creates parent directories if they don't exist.
        """
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(self.format(run), f, indent=2, ensure_ascii=False, default=str)
