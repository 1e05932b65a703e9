"""
MCP Interface Layer using fastmcp: retrieval, recording and dashboard tools.
"""
from typing import Any, Callable, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import Interaction, extract_citations
from .services.dashboard import DashboardService
from .services.pipeline import publish_interaction
from .services.retrieval import SimilarityRetriever, format_priming_examples
from .utils.bedrock_embed import BedrockEmbed
from .utils.config import config
from .utils.event_bus import InMemoryEventBus, create_event_bus
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger
from .utils.neptune_client import NeptuneClient
from .utils.opensearch_client import OpenSearchClient

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Interaction Learning')

# Clients and services, built on first use
_services: Dict[str, Any] = {}


def _service(name: str, factory: Callable[[], Any]) -> Any:
    if name not in _services:
        _services[name] = factory()
    return _services[name]


def _neptune() -> NeptuneClient:
    return _service('neptune', lambda: NeptuneClient(config.neptune))


def _opensearch() -> OpenSearchClient:
    return _service('opensearch', lambda: OpenSearchClient(config.opensearch))


def _embed() -> BedrockEmbed:
    return _service('embed', lambda: BedrockEmbed(config.bedrock_embed))


def _retriever() -> SimilarityRetriever:
    return _service('retriever', lambda: SimilarityRetriever(_embed(), _opensearch()))


def _dashboard() -> DashboardService:
    return _service('dashboard', lambda: DashboardService(_neptune()))


def _build_bus():
    bus = create_event_bus(config.event_bus)
    if isinstance(bus, InMemoryEventBus):
        # No separate worker consumes an in-process bus, so the pipeline runs here
        from .worker import build_coordinator
        build_coordinator(bus, neptune=_neptune(), opensearch=_opensearch(), embed=_embed())
    return bus


def _bus():
    return _service('bus', _build_bus)


@mcp.tool()
def retrieve_similar_memories(question: str, limit: int = 3) -> Dict[str, Any]:
    """Find past high-quality interactions similar to a question.

    Args:
        question: The user's question
        limit: Maximum number of memories to return (default: 3)

    Returns:
        Dictionary with the matching memories and the few-shot priming text
    """
    memories = _retriever().retrieve(question, limit)
    result = [{
        'id': memory.id,
        'question': memory.question,
        'answer': memory.answer,
        'graph_queries': memory.graph_queries,
        'overall_score': memory.overall_score,
        'similarity': memory.similarity,
    } for memory in memories]

    logger.debug(f'MCP retrieval returned {len(result)} memories')
    return {'memories': result, 'priming_examples': format_priming_examples(memories)}


@mcp.tool()
def record_interaction(question: str,
                       answer: str,
                       graph_queries: Optional[List[str]] = None,
                       evidence_node_ids: Optional[List[str]] = None,
                       elapsed_ms: int = 0,
                       memories_used: Optional[List[str]] = None,
                       graph_results: Optional[List[Dict[str, Any]]] = None,
                       interaction_id: Optional[str] = None) -> Dict[str, str]:
    """Hand a finished interaction to the learning pipeline.

    Evidence node ids default to the ``[Node-ID]`` citations found in the answer.

    Returns:
        Dictionary with the interaction id and the published event id

    Raises:
        ValueError: If the question is empty
    """
    if not question or not question.strip():
        raise ValueError('Question is required')

    interaction = Interaction(question=question,
                              answer=answer,
                              graph_queries=graph_queries or [],
                              evidence_node_ids=extract_citations(answer) if evidence_node_ids is None else evidence_node_ids,
                              elapsed_ms=elapsed_ms,
                              memories_used=memories_used or [],
                              graph_results=graph_results or [])
    if interaction_id:
        interaction.interaction_id = interaction_id

    bus = _bus()
    event_id = publish_interaction(bus, interaction)
    if isinstance(bus, InMemoryEventBus):
        bus.drain()

    logger.info(f'Recorded interaction {interaction.interaction_id}')
    return {'interaction_id': interaction.interaction_id, 'event_id': event_id}


@mcp.tool()
def get_learning_stats() -> Dict[str, Any]:
    """Current learning statistics: memory count, average score, pattern count."""
    return _dashboard().get_statistics()


@mcp.tool()
def list_recent_memories(limit: int = 20) -> List[Dict[str, Any]]:
    """Most recently recorded memories with their rubric scores."""
    return _dashboard().list_recent_memories(limit)


@mcp.tool()
def list_query_patterns(limit: int = 20) -> List[Dict[str, Any]]:
    """Learned query patterns ordered by usage."""
    return _dashboard().list_query_patterns(limit)


@mcp.tool()
def list_evaluations(limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Stored evaluations in the order they were made, for plotting quality over time."""
    return _dashboard().list_evaluations(limit)


@mcp.tool()
def health() -> Dict[str, Any]:
    """Configuration and health of the services behind these tools."""
    return get_system_info({
        'neptune': _neptune(),
        'opensearch': _opensearch(),
        'bedrock_embed': _embed(),
        'event_bus': _bus(),
    }, components=('neptune', 'opensearch', 'bedrock_embed', 'event_bus'))


def main():
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)


if __name__ == '__main__':
    main()
