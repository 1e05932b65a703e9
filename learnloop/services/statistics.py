"""
Statistics Aggregator: keep the cached learning statistics current.
"""

from typing import Optional

from ..models.core import RollingStatistics
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient

logger = get_logger(__name__)


class StatisticsAggregator:

    def __init__(self, neptune: Optional[NeptuneClient] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)

    def refresh(self) -> Optional[RollingStatistics]:
        """Recompute the statistics from the graph and overwrite the cached record.

        Returns None, leaving the previous record in place, on any failure.
        """
        try:
            stats = self.neptune.compute_learning_stats()
            self.neptune.save_learning_stats(stats)
        except Exception as e:
            logger.error(f'Failed to refresh learning statistics (non-critical): {e}')
            return None

        logger.info(f'Learning statistics updated: {stats.total_memories} memories, '
                    f'{stats.total_patterns} patterns, avg score {stats.avg_overall_score:.3f}')
        return stats
