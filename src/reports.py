"""Aggregate statistics for the admin dashboard, batch reports and student history."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from src.models import DISCIPLINE_LABELS, Batch, ClusteringResult


def percentage(count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(count / total * 100, 1)


def discipline_distribution(results: Sequence[ClusteringResult]) -> List[Dict[str, Any]]:
    total = len(results)
    distribution = []
    for label in DISCIPLINE_LABELS:
        count = sum(1 for r in results if r.discipline_status == label)
        distribution.append({"name": label, "count": count, "percentage": percentage(count, total)})
    return distribution


def dashboard_stats(results: Sequence[ClusteringResult]) -> Dict[str, Any]:
    """Headline numbers for the dashboard; an empty result set gives zeros."""
    return {
        "total_students": len(results),
        "disciplined": sum(1 for r in results if r.discipline_status == "Disiplin"),
        "warnings": sum(1 for r in results if "SP" in r.discipline_status),
        "clusters": len({r.cluster_label for r in results}),
        "distribution": discipline_distribution(results),
    }


@dataclass
class BatchReport:
    batch: Optional[Batch]
    stats: Dict[str, int]
    clusters: List[str]
    results: List[ClusteringResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.stats.get("total", 0)

    def share(self, key: str) -> float:
        return percentage(self.stats.get(key, 0), self.total)

    def to_dict(self) -> Dict[str, Any]:
        period = self.batch.period if self.batch else None
        return {
            "batch": {
                "id": self.batch.id,
                "name": self.batch.name,
                "date": self.batch.date,
                "period": period.name if period else None,
                "academic_year": period.academic_year if period else None,
            } if self.batch else None,
            "stats": dict(self.stats),
            "clusters": list(self.clusters),
            "results": [r.to_dict() for r in self.results],
        }


def build_batch_report(results: Sequence[ClusteringResult]) -> Optional[BatchReport]:
    """Summarise one batch's results; None when there is nothing to report."""
    if not results:
        return None

    stats = {
        "total": len(results),
        "disiplin": sum(1 for r in results if r.discipline_status == "Disiplin"),
        "sp1": sum(1 for r in results if r.discipline_status == "SP-I"),
        "sp2": sum(1 for r in results if r.discipline_status == "SP-II"),
        "sp3": sum(1 for r in results if r.discipline_status == "SP-III"),
    }
    clusters: List[str] = []
    for r in results:
        if r.cluster_label not in clusters:
            clusters.append(r.cluster_label)

    return BatchReport(batch=results[0].batch, stats=stats, clusters=clusters, results=list(results))


def personal_history(results: Sequence[ClusteringResult]) -> Dict[str, Any]:
    """A student's own results, newest first, with the latest one called out."""
    history = [r.to_dict() for r in results]
    return {
        "latest": history[0] if history else None,
        "count": len(history),
        "history": history,
    }
