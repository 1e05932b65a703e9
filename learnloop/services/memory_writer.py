"""
Memory Writer: persist an evaluated interaction as a reusable memory.
"""

import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from ..models.core import Evaluation, Interaction, Memory
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError, validate_dimension
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError
from ..utils.opensearch_client import OpenSearchClient, OpenSearchError

logger = get_logger(__name__)

# Namespace for memory ids derived from interaction ids
MEMORY_NAMESPACE = uuid.UUID('6f1c2a52-4a53-4d1b-9f0e-3b8f5a7d2c41')


class MemoryWriteError(Exception):
    """Raised when a memory cannot be persisted; fails the enrichment job."""
    pass


def memory_id_for(interaction_id: str) -> str:
    """Deterministic memory id, so redelivered events never create a second memory."""
    return f'memory-{uuid.uuid5(MEMORY_NAMESPACE, interaction_id)}'


@dataclass
class EvidenceLinkResult:
    """Outcome of linking a memory to its cited graph nodes."""
    linked: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    inherited_from: Optional[str] = None


class MemoryWriter:
    """Create Memory records and their evidence links."""

    def __init__(self,
                 neptune: Optional[NeptuneClient] = None,
                 opensearch: Optional[OpenSearchClient] = None,
                 embed: Optional[BedrockEmbed] = None,
                 dimension: Optional[int] = None,
                 inherit_evidence: Optional[bool] = None,
                 inherit_min_similarity: Optional[float] = None):
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.dimension = dimension or config.opensearch.dimension
        self.inherit_evidence = config.pipeline.inherit_evidence if inherit_evidence is None else inherit_evidence
        self.inherit_min_similarity = (config.pipeline.inherit_min_similarity
                                       if inherit_min_similarity is None else inherit_min_similarity)

        logger.info('Initialized MemoryWriter')

    def write(self, interaction: Interaction, evaluation: Optional[Evaluation] = None) -> Memory:
        """
        Create exactly one Memory for an interaction.

        Safe to re-run: the memory id is derived from the interaction id and
        both stores skip records that already exist.

        Args:
            interaction: The finished interaction
            evaluation: Its evaluation; the default evaluation is used if None

        Returns:
            The written Memory

        Raises:
            MemoryWriteError: If embedding or either store write fails
        """
        if evaluation is None:
            logger.warning(f'No evaluation for interaction {interaction.interaction_id}, using default scores')
            evaluation = Evaluation.default()

        memory_id = memory_id_for(interaction.interaction_id)

        try:
            embedding = validate_dimension(self.embed.embed(interaction.question), self.dimension)
            memory = Memory.from_interaction(memory_id, interaction, evaluation, embedding)

            created = self.neptune.create_memory_vertex(memory)
            self.opensearch.index_memory(memory.to_document())

        except (BedrockEmbedError, NeptuneError, OpenSearchError) as e:
            logger.error(f'Failed to write memory {memory_id}: {e}')
            raise MemoryWriteError(f'Memory write failed: {e}')

        if created:
            logger.info(f'Created memory {memory_id} (overall {memory.overall_score:.3f})')
        else:
            logger.info(f'Memory {memory_id} already existed, reusing it')
        return memory

    def link_evidence(self, memory: Memory, interaction: Interaction) -> EvidenceLinkResult:
        """
        Link a memory to the graph nodes its answer cited.

        Cited ids that do not exist in the graph are skipped. When nothing was
        cited, the evidence of the single most similar prior memory is
        inherited (flagged on the edge) if inheritance is enabled and that
        memory's similarity exceeds ``inherit_min_similarity``.

        Raises:
            MemoryWriteError: If the graph store fails
        """
        result = EvidenceLinkResult()
        node_ids = list(dict.fromkeys(interaction.evidence_node_ids))
        inherited = False

        try:
            if not node_ids and self.inherit_evidence:
                result.inherited_from, node_ids = self._inheritable_evidence(memory)
                inherited = bool(node_ids)

            if not node_ids:
                logger.info(f'No evidence nodes to link for memory {memory.id}')
                return result

            for node_id in node_ids:
                if not self.neptune.evidence_target_exists(node_id):
                    logger.warning(f'Evidence node {node_id} not found, skipping link for memory {memory.id}')
                    result.skipped.append(node_id)
                    continue
                self.neptune.create_evidence_edge(memory.id, node_id, inherited=inherited)
                result.linked.append(node_id)

        except (NeptuneError, OpenSearchError) as e:
            logger.error(f'Failed to link evidence for memory {memory.id}: {e}')
            raise MemoryWriteError(f'Evidence linking failed: {e}')

        logger.info(f'Linked {len(result.linked)} evidence nodes to memory {memory.id}'
                    + (f' (inherited from {result.inherited_from})' if inherited else ''))
        return result

    def _inheritable_evidence(self, memory: Memory):
        """Evidence ids of the most similar other memory, or (None, [])."""
        for hit in self.opensearch.knn_search(memory.embedding, top_k=2):
            prior_id = (hit.get('document') or {}).get('id') or hit.get('id')
            if prior_id == memory.id:
                continue
            if hit['similarity'] <= self.inherit_min_similarity:
                logger.info(f'Nearest memory {prior_id} too dissimilar ({hit["similarity"]:.3f}) to inherit evidence from')
                return None, []
            evidence = self.neptune.get_evidence_ids(prior_id)
            if evidence:
                logger.warning(f'Memory {memory.id} cites no evidence, inheriting {len(evidence)} links from {prior_id}')
                return prior_id, evidence
            return None, []
        return None, []
