"""
Similarity Linker: connect a new memory to its nearest neighbours.
"""

from typing import List, Optional

from ..models.core import Memory, SimilarityLink
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.opensearch_client import OpenSearchClient

logger = get_logger(__name__)


class SimilarityLinker:
    """Create SIMILAR_TO edges from a memory to its most similar peers."""

    def __init__(self,
                 neptune: Optional[NeptuneClient] = None,
                 opensearch: Optional[OpenSearchClient] = None,
                 threshold: Optional[float] = None,
                 limit: Optional[int] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.threshold = config.pipeline.similarity_threshold if threshold is None else threshold
        self.limit = limit or config.pipeline.similarity_limit

    def link(self, memory: Memory) -> List[SimilarityLink]:
        """
        Link a memory to up to ``limit`` other memories with similarity above the threshold.

        Existing edges are left untouched. Failures are logged and yield no links.

        Returns:
            The links that were newly created
        """
        if not memory.embedding:
            logger.warning(f'Memory {memory.id} has no embedding, skipping similarity links')
            return []

        links = []
        try:
            # One extra neighbour since the memory itself is usually the nearest hit
            hits = self.opensearch.knn_search(memory.embedding, top_k=self.limit + 1)

            candidates = []
            for hit in hits:
                target_id = (hit.get('document') or {}).get('id') or hit.get('id')
                if target_id == memory.id or hit['similarity'] <= self.threshold:
                    continue
                candidates.append(SimilarityLink(memory.id, target_id, hit['similarity']))

            for link in candidates[:self.limit]:
                if self.neptune.create_similarity_edge(link.source_id, link.target_id, link.similarity):
                    links.append(link)

        except Exception as e:
            logger.error(f'Failed to link similar memories for {memory.id} (non-critical): {e}')
            return links

        logger.info(f'Linked memory {memory.id} to {len(links)} similar memories')
        return links
