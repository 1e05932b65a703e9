"""
Read-only views over the learned state.
"""

from typing import Any, Dict, List, Optional

from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient

logger = get_logger(__name__)

EVALUATOR_NOTES_PREVIEW = 300


class DashboardService:
    """Statistics, recent memories, query patterns and evaluations as plain dictionaries."""

    def __init__(self, neptune: Optional[NeptuneClient] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)

    def get_statistics(self) -> Dict[str, Any]:
        """Cached statistics; recomputed (without caching) if the record was never written."""
        stats = self.neptune.get_learning_stats()
        cached = stats is not None
        if not cached:
            logger.info('No cached learning statistics yet, computing them from the graph')
            stats = self.neptune.compute_learning_stats()

        return {
            'total_memories': stats.total_memories,
            'avg_overall_score': round(stats.avg_overall_score, 4),
            'total_patterns': stats.total_patterns,
            'last_updated': stats.last_updated.isoformat(),
            'cached': cached,
        }

    def list_recent_memories(self, limit: int = 20) -> List[Dict[str, Any]]:
        memories = self.neptune.list_recent_memories(limit)
        return [{
            'id': memory.id,
            'question': memory.question,
            'answer': memory.answer,
            'scores': {
                'grounding': memory.grounding_score,
                'accuracy': memory.accuracy_score,
                'completeness': memory.completeness_score,
                'pedagogy': memory.pedagogy_score,
                'clarity': memory.clarity_score,
                'overall': memory.overall_score,
            },
            'evaluator_notes': memory.evaluator_notes[:EVALUATOR_NOTES_PREVIEW],
            'graph_queries': memory.graph_queries,
            'created_at': memory.created_at.isoformat(),
        } for memory in memories]

    def list_query_patterns(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Query patterns, most used first."""
        patterns = self.neptune.list_query_patterns(limit)
        return [{
            'id': pattern.id,
            'name': pattern.name,
            'description': pattern.description,
            'template': pattern.template,
            'success_count': pattern.success_count,
            'failure_count': pattern.failure_count,
            'total_usage': pattern.total_usage,
            'success_rate': round(pattern.success_rate, 1),
        } for pattern in patterns]

    def list_evaluations(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Stored evaluations oldest first, for plotting the learning curve."""
        return [record.to_dict() for record in self.neptune.list_evaluations(limit)]
