"""
Health check utilities for the application.
"""

from typing import Any, Dict, Iterable, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .event_bus import create_event_bus
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)

# name -> (service description, detail key, detail value, factory)
COMPONENTS: Dict[str, tuple] = {
    'bedrock_llm': ('Amazon Bedrock judgment model', 'model', lambda: config.bedrock_llm.model_id,
                    lambda: BedrockLLM(config.bedrock_llm)),
    'bedrock_embed': ('Amazon Bedrock Embed', 'model', lambda: config.bedrock_embed.model_id,
                      lambda: BedrockEmbed(config.bedrock_embed)),
    'neptune': ('Amazon Neptune', 'endpoint', lambda: config.neptune.endpoint, lambda: NeptuneClient(config.neptune)),
    'opensearch': ('Amazon OpenSearch', 'endpoint', lambda: config.opensearch.endpoint,
                   lambda: OpenSearchClient(config.opensearch)),
    'event_bus': ('Pipeline event queue', 'backend', lambda: config.event_bus.backend,
                  lambda: create_event_bus(config.event_bus)),
}


def check_health(clients: Optional[Dict[str, Any]] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(clients)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def _component_status(name: str, client: Any) -> Dict[str, Any]:
    service, detail_key, detail, factory = COMPONENTS[name]
    try:
        client = client if client is not None else factory()
        # The in-memory bus has no health check of its own
        healthy = client.health_check() if hasattr(client, 'health_check') else True
        return {'healthy': bool(healthy), 'service': service, detail_key: detail()}
    except Exception as e:
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(clients: Optional[Dict[str, Any]] = None, components: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        clients: Already constructed clients by component name; missing ones are built from config
        components: Names of the components to check, all by default

    Returns:
        Dictionary with health status of each component
    """
    clients = clients or {}
    return {name: _component_status(name, clients.get(name)) for name in (components or COMPONENTS)}


def get_system_info(clients: Optional[Dict[str, Any]] = None, components: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Get system information, configuration and component health.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'learnloop',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'memory_index': config.opensearch.index_name,
            'event_bus_backend': config.event_bus.backend,
            'retrieval_min_score': config.pipeline.retrieval_min_score,
            'pattern_min_score': config.pipeline.pattern_min_score,
            'similarity_threshold': config.pipeline.similarity_threshold,
        },
        'health_status': get_health_status(clients, components),
    }
