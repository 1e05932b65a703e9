"""
OpenSearch client wrapper for memory vector similarity search.
"""

import time
from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def score_to_cosine(score: float) -> float:
    """Convert an nmslib ``cosinesimil`` k-NN score back to cosine similarity.

    OpenSearch reports ``1 / (2 - cos)`` for this space.
    """
    if score <= 0:
        return -1.0
    return max(-1.0, min(1.0, 2.0 - 1.0 / score))


class OpenSearchClient:
    """OpenSearch client holding one k-NN index of memory embeddings."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self.index_name = config.index_name

        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)

        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self) -> str:
        """
        Create the memory index with a k-NN vector field if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'id': {
                            'type': 'keyword'
                        },
                        'interaction_id': {
                            'type': 'keyword'
                        },
                        'question': {
                            'type': 'text'
                        },
                        'answer': {
                            'type': 'text'
                        },
                        'graph_queries': {
                            'type': 'text'
                        },
                        'overall_score': {
                            'type': 'float'
                        },
                        'evaluator_notes': {
                            'type': 'text'
                        },
                        'memories_used': {
                            'type': 'keyword'
                        },
                        'evidence_node_ids': {
                            'type': 'keyword'
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'created_at': {
                            'type': 'date'
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=self.index_name, body=index_body)
            logger.info(f'Created index {self.index_name}')
            if response.get('acknowledged', False):
                logger.info(f'Waiting 15s for index {self.index_name} sync-up...')
                time.sleep(15)
                return 'created'
            return 'failed'

        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def index_memory(self, document: Dict[str, Any]) -> bool:
        """
        Index a memory document unless one with the same memory id exists.

        Args:
            document: Memory document including its embedding

        Returns:
            True if the document was indexed, False if it was already present
        """
        if self.get_document(document['id']) is not None:
            logger.debug(f"Memory document already indexed: {document['id']}")
            return False

        try:
            response = self.client.index(index=self.index_name, body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f"Indexed memory document {document['id']}")
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
                raise OpenSearchError(f"Memory document {document['id']} was not indexed")

            return True

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def knn_search(self, query_vector: List[float], top_k: int = 3) -> List[Dict[str, Any]]:
        """
        Find the memories nearest to a vector.

        Args:
            query_vector: Query vector for similarity search
            top_k: Number of results to return

        Returns:
            Hits ordered by descending similarity, each with 'id', 'score',
            'similarity' (cosine) and 'document'
        """
        try:
            search_body = {
                'size': top_k,
                'query': {
                    'knn': {
                        'embedding': {
                            'vector': query_vector,
                            'k': top_k
                        }
                    }
                },
                '_source': {
                    'excludes': ['embedding']  # Don't return embedding in results
                }
            }

            response = self.client.search(index=self.index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                results.append({
                    'id': hit['_id'],
                    'score': hit['_score'],
                    'similarity': score_to_cosine(hit['_score']),
                    'document': hit['_source']
                })

            results.sort(key=lambda result: result['similarity'], reverse=True)
            logger.debug(f'k-NN search returned {len(results)} results')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing k-NN search: {e}')
            raise OpenSearchError(f'k-NN search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in k-NN search: {e}')
            raise OpenSearchError(f'Unexpected error in k-NN search: {e}')

    def get_document(self, memory_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a memory document by memory id.

        Returns:
            Hit with 'id', 'score' and 'document' if found, None otherwise
        """
        try:
            search_body = {
                'size': 1,
                'query': {
                    'term': {
                        'id': memory_id
                    }
                },
                '_source': {
                    'excludes': ['embedding']
                }
            }

            response = self.client.search(index=self.index_name, body=search_body)

            if response['hits']['total']['value'] > 0:
                hit = response['hits']['hits'][0]
                return {'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']}

            return None

        except OpenSearchException as e:
            logger.error(f'Error getting memory document {memory_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting memory document {memory_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting document: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name)

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
